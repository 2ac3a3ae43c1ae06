from __future__ import annotations

import inspect
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, get_args

from provisor.defaults import DEFAULT_RANKING, DEFAULT_SCOPE
from provisor.exceptions import UnsatisfiedDependencyError
from provisor.injection import Injectee, injectees_for
from provisor.markers import (
    Named,
    Qualifier,
    Unqualified,
    get_contracts_provided,
    get_qualifiers,
    get_rank,
    get_scope,
    is_contract,
)
from provisor.scope import Scope
from provisor.type_resolver import arguments_match, raw_type, type_closure, unwrap_annotated

if TYPE_CHECKING:
    from provisor.locator import ServiceHandle, ServiceLocator

_UNSET: Any = object()


class Descriptor(ABC):
    """Describe how a service is created, shared and disposed.

    A descriptor advertises a set of contracts and qualifiers and owns a cache
    slot used by the locator for singleton instances. ``service_id`` and
    ``locator_id`` are assigned when the descriptor is committed.
    """

    def __init__(
        self,
        *,
        contracts: Iterable[Any],
        implementation_type: Any,
        scope: Scope,
        qualifiers: Iterable[Qualifier] = (),
        ranking: int | None = None,
        name: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._advertised = tuple(dict.fromkeys(unwrap_annotated(item)[0] for item in contracts))
        self._contracts = frozenset(self._advertised)
        self._implementation_type = implementation_type
        self._scope = scope
        self._qualifiers = frozenset(qualifiers)
        self._ranking = ranking
        self._name = name if name is not None else _name_from(self._qualifiers)
        self._cache: Any = _UNSET
        self.service_id: int | None = None
        self.locator_id: int | None = None

    @abstractmethod
    def create(self, root: ServiceHandle | None) -> Any:
        """Create a new instance of the service.

        Args:
            root: The handle the instance is created for, if any. Per-lookup
                dependencies created beneath it are released with it.

        """

    @abstractmethod
    def dispose(self, instance: Any) -> None:
        """Dispose an instance previously returned by ``create``."""

    @property
    def contracts(self) -> frozenset[Any]:
        return self._contracts

    @property
    def advertised_contracts(self) -> tuple[Any, ...]:
        """Contracts in declaration order, the implementation type first."""
        return self._advertised

    @property
    def implementation_type(self) -> Any:
        return self._implementation_type

    @property
    def implementation_class(self) -> type | None:
        return raw_type(self._implementation_type)

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def qualifiers(self) -> frozenset[Qualifier]:
        return self._qualifiers

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def ranking(self) -> int:
        with self._lock:
            if self._ranking is None:
                self._ranking = self._initial_ranking()
            return self._ranking

    def set_ranking(self, ranking: int) -> int:
        """Replace the ranking and return the previous one."""
        with self._lock:
            previous = self._ranking if self._ranking is not None else self._initial_ranking()
            self._ranking = ranking
            return previous

    def _initial_ranking(self) -> int:
        return DEFAULT_RANKING

    def get_cache(self) -> Any:
        with self._lock:
            return None if self._cache is _UNSET else self._cache

    def is_cache_set(self) -> bool:
        with self._lock:
            return self._cache is not _UNSET

    def set_cache(self, value: Any) -> None:
        with self._lock:
            self._cache = value

    def release_cache(self) -> None:
        with self._lock:
            self._cache = _UNSET

    def matches_contract(self, required_type: Any) -> bool:
        """Return whether this descriptor advertises a contract assignable to ``required_type``.

        A raw class on either side matches any parameterization of it.
        Parameterized types match when their arguments are equal, with ``Any``
        and type variables in the requested type acting as wildcards.
        """
        required_type = unwrap_annotated(required_type)[0]
        if required_type in self._contracts:
            return True
        required_raw = raw_type(required_type)
        if required_raw is None:
            return False
        for contract in self._advertised:
            if raw_type(contract) is not required_raw:
                continue
            required_arguments = get_args(required_type)
            contract_arguments = get_args(contract)
            if not required_arguments or not contract_arguments:
                return True
            if arguments_match(required_arguments, contract_arguments):
                return True
        return False

    def matches_qualifiers(
        self,
        qualifiers: frozenset[Qualifier],
        unqualified: Unqualified | None = None,
    ) -> bool:
        if not qualifiers <= self._qualifiers:
            return False
        if unqualified is None:
            return True
        if not unqualified.types:
            return not self._qualifiers
        return not any(isinstance(qualifier, unqualified.types) for qualifier in self._qualifiers)

    def matches(self, injectee: Injectee) -> bool:
        return self.matches_contract(injectee.required_type) and self.matches_qualifiers(
            injectee.qualifiers,
            injectee.unqualified,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(implementation={self._implementation_type!r}, "
            f"contracts={list(self._advertised)!r}, scope={self._scope.value}, "
            f"service_id={self.service_id})"
        )


class ConstantDescriptor(Descriptor):
    """Descriptor for an already constructed instance.

    The instance is shared like a singleton and is never disposed by the
    locator.
    """

    def __init__(
        self,
        instance: Any,
        *,
        contracts: Iterable[Any] | None = None,
        qualifiers: Iterable[Qualifier] = (),
        ranking: int | None = None,
        name: str | None = None,
    ) -> None:
        implementation = type(instance)
        super().__init__(
            contracts=contracts if contracts is not None else value_contracts(implementation),
            implementation_type=implementation,
            scope=Scope.SINGLETON,
            qualifiers=qualifiers,
            ranking=ranking,
            name=name,
        )
        self._instance = instance
        self.set_cache(instance)

    def create(self, root: ServiceHandle | None) -> Any:
        return self._instance

    def dispose(self, instance: Any) -> None:
        return None


class ClassDescriptor(Descriptor):
    """Descriptor for a class created through constructor injection.

    Constructor parameters are resolved from their type hints. The scope,
    qualifiers and ranking come from the markers on the class.
    """

    def __init__(self, cls: type, locator: ServiceLocator) -> None:
        qualifiers = get_qualifiers(cls)
        super().__init__(
            contracts=value_contracts(cls),
            implementation_type=cls,
            scope=get_scope(cls) or DEFAULT_SCOPE,
            qualifiers=qualifiers,
            ranking=get_rank(cls),
        )
        self._cls = cls
        self._locator = locator
        self._injectees: tuple[Injectee, ...] | None = None

    def create(self, root: ServiceHandle | None) -> Any:
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for injectee in self._constructor_injectees():
            value = self._resolve(injectee, root)
            if injectee.name is not None and injectee.kind is inspect.Parameter.KEYWORD_ONLY:
                kwargs[injectee.name] = value
            else:
                args.append(value)
        instance = self._cls(*args, **kwargs)
        self._locator.post_construct(instance)
        return instance

    def dispose(self, instance: Any) -> None:
        self._locator.pre_destroy(instance)

    def _constructor_injectees(self) -> tuple[Injectee, ...]:
        with self._lock:
            if self._injectees is None:
                self._injectees = injectees_for(self._cls, context_type=self._cls)
            return self._injectees

    def _resolve(self, injectee: Injectee, root: ServiceHandle | None) -> Any:
        if injectee.is_self:
            return self
        descriptor = self._locator.get_injectee_descriptor(injectee)
        if descriptor is None:
            if not injectee.optional:
                raise UnsatisfiedDependencyError(injectee)
            return injectee.fallback
        return self._locator.get_service_for(descriptor, root=root, injectee=injectee)


def value_contracts(value_type: Any) -> tuple[Any, ...]:
    """Return the contracts advertised for values of ``value_type``.

    An explicit ``@contracts_provided`` list on the raw class wins. Otherwise
    ``value_type`` itself and every supertype marked ``@contract`` are
    advertised, with type arguments resolved from ``value_type``.
    """
    explicit = get_contracts_provided(raw_type(value_type))
    if explicit is not None:
        return explicit
    closure = type_closure(value_type)
    return (closure[0], *(supertype for supertype in closure[1:] if is_contract(raw_type(supertype))))


def _name_from(qualifiers: frozenset[Qualifier]) -> str | None:
    for qualifier in qualifiers:
        if isinstance(qualifier, Named):
            return qualifier.value
    return None
