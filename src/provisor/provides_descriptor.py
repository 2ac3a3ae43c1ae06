from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from provisor.defaults import DEFAULT_RANKING
from provisor.descriptors import Descriptor
from provisor.exceptions import InvalidRegistrationError, MultiError, ProvisorError
from provisor.injection import Injectee, ParameterScope
from provisor.markers import Provides, Qualifier
from provisor.scope import Scope

if TYPE_CHECKING:
    from provisor.locator import ServiceHandle, ServiceLocator


class MemberKind(str, Enum):
    """The four kinds of provider members, cached separately per class."""

    STATIC_METHOD = "static_method"
    INSTANCE_METHOD = "instance_method"
    STATIC_FIELD = "static_field"
    INSTANCE_FIELD = "instance_field"

    @property
    def is_static(self) -> bool:
        return self in (MemberKind.STATIC_METHOD, MemberKind.STATIC_FIELD)


STATIC_KINDS = frozenset({MemberKind.STATIC_METHOD, MemberKind.STATIC_FIELD})
INSTANCE_KINDS = frozenset({MemberKind.INSTANCE_METHOD, MemberKind.INSTANCE_FIELD})
ALL_KINDS = STATIC_KINDS | INSTANCE_KINDS


@dataclass(frozen=True, slots=True, kw_only=True)
class ProviderMember:
    """A method or field marked as a provider, as found on one class.

    Attributes:
        owner: The class the member was found on.
        declared_in: The class in ``owner``'s MRO that declares the member.
        name: Attribute name of the member.
        kind: Static or instance, method or field.
        marker: The ``Provides`` marker of the member.
        value_type: The provided type, resolved in the owner's context and
            stripped of ``Annotated`` and ``None``.
        nullable: Whether the member is declared to provide ``None``.
        injectees: Injection points of a method's parameters.

    """

    owner: type
    declared_in: type
    name: str
    kind: MemberKind
    marker: Provides
    value_type: Any
    nullable: bool = False
    injectees: tuple[Injectee, ...] = ()

    @property
    def key(self) -> tuple[type, str]:
        return (self.owner, self.name)

    def __str__(self) -> str:
        return f"{self.owner.__qualname__}.{self.name}"


class ProviderStrategy(ABC):
    """Produces the value of one provider member."""

    def __init__(self, member: ProviderMember) -> None:
        self.member = member

    @abstractmethod
    def provide(self, scope: ParameterScope) -> Any:
        """Return the provided value, resolving everything it needs through ``scope``."""


class StaticMethodStrategy(ProviderStrategy):
    def __init__(self, member: ProviderMember, function: Callable[..., Any]) -> None:
        super().__init__(member)
        self._function = function

    def provide(self, scope: ParameterScope) -> Any:
        args, kwargs = scope.arguments(self.member.injectees)
        return self._function(*args, **kwargs)


class InstanceMethodStrategy(ProviderStrategy):
    def __init__(self, member: ProviderMember, owner_descriptor: Descriptor) -> None:
        super().__init__(member)
        self.owner_descriptor = owner_descriptor

    def provide(self, scope: ParameterScope) -> Any:
        provider = _acquire_provider(scope, self.owner_descriptor, self.member)
        args, kwargs = scope.arguments(self.member.injectees)
        return getattr(provider, self.member.name)(*args, **kwargs)


class StaticFieldStrategy(ProviderStrategy):
    def provide(self, scope: ParameterScope) -> Any:
        return getattr(self.member.owner, self.member.name)


class InstanceFieldStrategy(ProviderStrategy):
    def __init__(self, member: ProviderMember, owner_descriptor: Descriptor) -> None:
        super().__init__(member)
        self.owner_descriptor = owner_descriptor

    def provide(self, scope: ParameterScope) -> Any:
        provider = _acquire_provider(scope, self.owner_descriptor, self.member)
        return getattr(provider, self.member.name)


def _acquire_provider(scope: ParameterScope, owner_descriptor: Descriptor, member: ProviderMember) -> Any:
    provider = scope.acquire(owner_descriptor)
    if provider is None:
        msg = f"The provider of {member} resolved to None"
        raise ProvisorError(msg)
    return provider


class DisposePolicy(ABC):
    """Disposes values produced by a provider member. Never called with ``None``."""

    @abstractmethod
    def dispose(self, instance: Any, locator: ServiceLocator) -> None: ...


class PreDestroyPolicy(DisposePolicy):
    def dispose(self, instance: Any, locator: ServiceLocator) -> None:
        locator.pre_destroy(instance)


class ProvidedInstancePolicy(DisposePolicy):
    def __init__(self, method_name: str) -> None:
        self.method_name = method_name

    def dispose(self, instance: Any, locator: ServiceLocator) -> None:
        getattr(instance, self.method_name)()


class StaticProviderPolicy(DisposePolicy):
    def __init__(self, method_name: str, function: Callable[[Any], Any]) -> None:
        self.method_name = method_name
        self._function = function

    def dispose(self, instance: Any, locator: ServiceLocator) -> None:
        self._function(instance)


class InstanceProviderPolicy(DisposePolicy):
    def __init__(self, method_name: str, owner_descriptor: Descriptor) -> None:
        self.method_name = method_name
        self.owner_descriptor = owner_descriptor

    def dispose(self, instance: Any, locator: ServiceLocator) -> None:
        with ParameterScope(locator) as scope:
            provider = scope.acquire(self.owner_descriptor)
            if provider is None:
                msg = f"The provider owning {self.method_name!r} resolved to None"
                raise ProvisorError(msg)
            getattr(provider, self.method_name)(instance)


class ProvidesDescriptor(Descriptor):
    """Descriptor synthesized for one provider member.

    Creating the service resolves the member's parameters, obtains the
    providing instance for instance members, invokes the member and passes a
    non-``None`` result through ``post_construct``. Per-lookup services
    resolved along the way are released before ``create`` returns. Failures
    reach the caller as ``MultiError``.
    """

    def __init__(
        self,
        *,
        locator: ServiceLocator,
        strategy: ProviderStrategy,
        dispose_policy: DisposePolicy,
        contracts: Iterable[Any],
        scope: Scope,
        qualifiers: Iterable[Qualifier] = (),
        rank: int | None = None,
    ) -> None:
        super().__init__(
            contracts=contracts,
            implementation_type=strategy.member.value_type,
            scope=scope,
            qualifiers=qualifiers,
        )
        self._locator = locator
        self._strategy = strategy
        self._dispose_policy = dispose_policy
        self._rank = rank

    @property
    def member(self) -> ProviderMember:
        return self._strategy.member

    @property
    def strategy(self) -> ProviderStrategy:
        return self._strategy

    @property
    def dispose_policy(self) -> DisposePolicy:
        return self._dispose_policy

    def _initial_ranking(self) -> int:
        return self._rank if self._rank is not None else DEFAULT_RANKING

    def create(self, root: ServiceHandle | None) -> Any:
        try:
            with ParameterScope(self._locator, descriptor=self) as scope:
                instance = self._strategy.provide(scope)
        except MultiError:
            raise
        except Exception as error:
            raise MultiError([error]) from error
        self._locator.post_construct(instance)
        return instance

    def dispose(self, instance: Any) -> None:
        if instance is None:
            return
        try:
            self._dispose_policy.dispose(instance, self._locator)
        except MultiError:
            raise
        except Exception as error:
            raise MultiError([error]) from error

    def __repr__(self) -> str:
        return (
            f"ProvidesDescriptor(member={self.member}, contracts={list(self.advertised_contracts)!r}, "
            f"scope={self.scope.value}, service_id={self.service_id})"
        )


class NonInstantiableClassDescriptor(Descriptor):
    """Placeholder for a class that only carries static provider members.

    It advertises no contracts, so it is never chosen for a lookup, and it
    cannot create or dispose instances.
    """

    def __init__(self, cls: type) -> None:
        super().__init__(contracts=(), implementation_type=cls, scope=Scope.PER_LOOKUP)

    def create(self, root: ServiceHandle | None) -> Any:
        msg = f"{self.implementation_type.__qualname__} cannot be instantiated"
        raise InvalidRegistrationError(msg)

    def dispose(self, instance: Any) -> None:
        msg = f"{self.implementation_type.__qualname__} cannot be instantiated"
        raise InvalidRegistrationError(msg)
