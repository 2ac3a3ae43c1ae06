from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from provisor.scope import Scope

T = TypeVar("T")

_SCOPE_ATTR = "__provisor_scope__"
_QUALIFIERS_ATTR = "__provisor_qualifiers__"
_CONTRACT_ATTR = "__provisor_contract__"
_CONTRACTS_PROVIDED_ATTR = "__provisor_contracts_provided__"
_RANK_ATTR = "__provisor_rank__"
_PROVIDES_ATTR = "__provisor_provides__"


class Qualifier:
    """Base class for qualifiers that distinguish services advertising the same contract.

    Subclasses are usually frozen dataclasses so that equal values compare and
    hash equal. A qualifier is attached to a class or provider member with
    ``@qualified(...)``, and requested by an injection point through
    ``typing.Annotated`` metadata.

    Examples:
        .. code-block:: python

            @dataclass(frozen=True)
            class Blue(Qualifier): ...


            @qualified(Blue())
            class BlueColor(Color): ...


            def paint(color: Annotated[Color, Blue()]) -> None: ...

    """


@dataclass(frozen=True, slots=True)
class Named(Qualifier):
    """Qualify a service by name. The name also becomes the descriptor name."""

    value: str


@dataclass(frozen=True, slots=True)
class MessageReceiver(Qualifier):
    """Qualifier placed on classes whose methods receive topic messages.

    ``permitted_types`` restricts the message types delivered to the class. An
    empty tuple permits every message type.
    """

    permitted_types: tuple[Any, ...] = ()


class DisposalHandledBy(str, Enum):
    """Selects who owns the dispose method named by ``Provides.dispose_method``."""

    PROVIDED_INSTANCE = "provided_instance"
    """A zero-argument method of the provided value is called to dispose it."""

    PROVIDER = "provider"
    """A method of the providing class is called with the provided value."""


@dataclass(frozen=True, slots=True, kw_only=True)
class Provides:
    """Marks a method or a class-level field as a provider of services.

    Use ``@provides(...)`` on methods and ``Annotated[T, Provides(...)]`` on
    field annotations.

    Attributes:
        contracts: Explicit contracts to advertise instead of the ones derived
            from the value type.
        dispose_method: Name of a method used to dispose provided values.
        disposal_handled_by: Where ``dispose_method`` is looked up.

    """

    contracts: tuple[Any, ...] = ()
    dispose_method: str | None = None
    disposal_handled_by: DisposalHandledBy = DisposalHandledBy.PROVIDED_INSTANCE


@dataclass(frozen=True, slots=True)
class Rank:
    """Ranking metadata for a provider field annotation."""

    value: int


@dataclass(frozen=True, slots=True)
class SelfDescriptor:
    """Injects the descriptor that is creating the current service.

    The parameter must be annotated ``Annotated[Descriptor, SelfDescriptor()]``.
    """


@dataclass(frozen=True, slots=True)
class Unqualified:
    """Requires a service that carries none of the given qualifier types.

    With no arguments the matching service must carry no qualifiers at all.
    """

    types: tuple[type[Qualifier], ...] = field(default=())

    def __init__(self, *types: type[Qualifier]) -> None:
        object.__setattr__(self, "types", tuple(types))


@dataclass(frozen=True, slots=True)
class SubscribeTo:
    """Marks the parameter of a subscriber method that receives the message."""


MARKER_TYPES: tuple[type, ...] = (
    Qualifier,
    Provides,
    Rank,
    SelfDescriptor,
    Unqualified,
    SubscribeTo,
)


def _marker_target(obj: Any) -> Any:
    if isinstance(obj, (staticmethod, classmethod)):
        return obj.__func__
    return obj


def _set_marker(obj: T, name: str, value: Any) -> T:
    setattr(_marker_target(obj), name, value)
    return obj


def _get_marker(obj: Any, name: str, default: Any = None) -> Any:
    target = _marker_target(obj)
    if isinstance(target, type):
        return vars(target).get(name, default)
    return getattr(target, name, default)


def provides(
    *,
    contracts: tuple[Any, ...] = (),
    dispose_method: str | None = None,
    disposal_handled_by: DisposalHandledBy = DisposalHandledBy.PROVIDED_INSTANCE,
) -> Callable[[T], T]:
    """Mark a method, ``staticmethod`` or ``classmethod`` as a service provider.

    The return annotation of the method is the type of the provided service.

    Args:
        contracts: Explicit contracts advertised by the provided service.
        dispose_method: Name of the method disposing provided values.
        disposal_handled_by: Whether ``dispose_method`` belongs to the provided
            value or to the providing class.

    Returns:
        A decorator that records the marker and returns the member unchanged.

    Examples:
        .. code-block:: python

            class Factories:
                @provides(dispose_method="close")
                def connection(self, settings: Settings) -> Connection:
                    return Connection(settings.url)

    """
    marker = Provides(
        contracts=tuple(contracts),
        dispose_method=dispose_method,
        disposal_handled_by=disposal_handled_by,
    )

    def decorator(member: T) -> T:
        return _set_marker(member, _PROVIDES_ATTR, marker)

    return decorator


def singleton(target: T) -> T:
    """Mark a class or provider member as singleton scoped."""
    return _set_marker(target, _SCOPE_ATTR, Scope.SINGLETON)


def per_lookup(target: T) -> T:
    """Mark a class or provider member as per-lookup scoped."""
    return _set_marker(target, _SCOPE_ATTR, Scope.PER_LOOKUP)


def qualified(*qualifiers: Qualifier) -> Callable[[T], T]:
    """Attach qualifiers to a class or provider member."""

    def decorator(target: T) -> T:
        existing = tuple(_get_marker(target, _QUALIFIERS_ATTR, ()))
        return _set_marker(target, _QUALIFIERS_ATTR, (*existing, *qualifiers))

    return decorator


def rank(value: int) -> Callable[[T], T]:
    """Set the ranking of a class or provider member."""

    def decorator(target: T) -> T:
        return _set_marker(target, _RANK_ATTR, value)

    return decorator


def contract(cls: type[T]) -> type[T]:
    """Mark a class as a contract, advertised by every service that subclasses it."""
    setattr(cls, _CONTRACT_ATTR, True)
    return cls


def contracts_provided(*contracts: Any) -> Callable[[type[T]], type[T]]:
    """Replace the contracts a class advertises with an explicit list."""

    def decorator(cls: type[T]) -> type[T]:
        setattr(cls, _CONTRACTS_PROVIDED_ATTR, tuple(contracts))
        return cls

    return decorator


def message_receiver(*permitted_types: Any) -> Callable[[type[T]], type[T]]:
    """Mark a class whose methods subscribe to topics.

    Args:
        *permitted_types: Message types the class accepts. When omitted, the
            class accepts every message type its subscriber methods accept.

    """
    return qualified(MessageReceiver(tuple(permitted_types)))


def get_provides(member: Any) -> Provides | None:
    return _get_marker(member, _PROVIDES_ATTR)


def get_scope(target: Any) -> Scope | None:
    return _get_marker(target, _SCOPE_ATTR)


def get_qualifiers(target: Any) -> tuple[Qualifier, ...]:
    return tuple(_get_marker(target, _QUALIFIERS_ATTR, ()))


def get_rank(target: Any) -> int | None:
    return _get_marker(target, _RANK_ATTR)


def is_contract(cls: Any) -> bool:
    return isinstance(cls, type) and bool(vars(cls).get(_CONTRACT_ATTR, False))


def get_contracts_provided(cls: Any) -> tuple[Any, ...] | None:
    if not isinstance(cls, type):
        return None
    return vars(cls).get(_CONTRACTS_PROVIDED_ATTR)


def qualifiers_in(metadata: tuple[Any, ...]) -> tuple[Qualifier, ...]:
    """Return the qualifier instances found in ``Annotated`` metadata."""
    return tuple(item for item in metadata if isinstance(item, Qualifier))


def first_of(metadata: tuple[Any, ...], marker_type: type[T]) -> T | None:
    """Return the first metadata item that is an instance of ``marker_type``."""
    for item in metadata:
        if isinstance(item, marker_type):
            return item
    return None
