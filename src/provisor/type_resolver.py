from __future__ import annotations

import types
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, Literal, ParamSpec, Protocol, TypeVar, Union, get_args, get_origin

from typing_extensions import TypeVarTuple, get_original_bases

TYPE_VARIABLE_TYPES = (TypeVar, ParamSpec, TypeVarTuple)
_NONE_TYPE = type(None)
_WALK_STOP = (Generic, Protocol, object)


@dataclass(frozen=True, slots=True)
class TypeVariableBinding:
    """Type variable assignments seen from a concrete context type.

    Bindings are keyed by the declaring generic class and the type variable, so
    two declarations that happen to reuse the same ``TypeVar`` object keep
    separate assignments. ``nearest`` keeps, for every variable, the value bound
    closest to the context type.
    """

    context: Any
    bindings: Mapping[tuple[type, Any], Any] = field(default_factory=dict)
    arguments: Mapping[type, tuple[Any, ...]] = field(default_factory=dict)
    nearest: Mapping[Any, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, context: Any) -> TypeVariableBinding:
        """Walk the generic hierarchy of ``context`` and record every binding.

        The walk is breadth-first and iterative, with a visited set on the
        declaring classes; the first assignment recorded for a key wins.

        Args:
            context: A class or a parameterized alias such as ``Box[int]``.

        Returns:
            The collected bindings. Non-class contexts produce empty bindings.

        """
        bindings: dict[tuple[type, Any], Any] = {}
        arguments: dict[type, tuple[Any, ...]] = {}
        nearest: dict[Any, Any] = {}
        visited: set[type] = set()
        queue: deque[Any] = deque([unwrap_annotated(context)[0]])
        while queue:
            current = queue.popleft()
            origin = get_origin(current) or current
            if not isinstance(origin, type) or origin in _WALK_STOP or origin in visited:
                continue
            visited.add(origin)

            current_arguments = get_args(current) if get_origin(current) is not None else ()
            if current_arguments:
                arguments.setdefault(origin, current_arguments)
            parameters = getattr(origin, "__parameters__", ())
            for parameter, argument in zip(parameters, current_arguments):
                bindings.setdefault((origin, parameter), argument)
                nearest.setdefault(parameter, argument)

            local = {
                parameter: bindings[(origin, parameter)]
                for parameter in parameters
                if (origin, parameter) in bindings
            }
            try:
                bases = get_original_bases(origin)
            except TypeError:
                bases = origin.__bases__
            queue.extend(substitute(base, local) for base in bases)
        return cls(context=context, bindings=bindings, arguments=arguments, nearest=nearest)

    def for_class(self, declared_in: type) -> dict[Any, Any]:
        """Return the assignments made to the type variables of ``declared_in``."""
        return {
            parameter: argument
            for (owner, parameter), argument in self.bindings.items()
            if owner is declared_in
        }

    def arguments_of(self, generic: type) -> tuple[Any, ...]:
        """Return the type arguments ``generic`` is parameterized with, or ``()``."""
        return self.arguments.get(generic, ())


def resolve_type(context: Any, dependent: Any, *, declared_in: type | None = None) -> Any:
    """Substitute the type variables of ``dependent`` bound by ``context``.

    Args:
        context: The concrete type the dependent type is seen from.
        dependent: A type expression that may mention type variables.
        declared_in: The class that declares the variables used by ``dependent``.
            When omitted, each variable takes the nearest binding in the
            hierarchy of ``context``.

    Returns:
        ``dependent`` with every bound variable replaced. Unbound variables are
        left in place.

    """
    if context is None or not contains_type_variable(dependent):
        return dependent
    binding = TypeVariableBinding.of(context)
    mapping = binding.for_class(declared_in) if declared_in is not None else binding.nearest
    return substitute(dependent, mapping)


def substitute(value: Any, mapping: Mapping[Any, Any]) -> Any:
    """Replace type variables in ``value`` using ``mapping``."""
    if not mapping:
        return value
    if isinstance(value, TYPE_VARIABLE_TYPES):
        return mapping.get(value, value)
    if isinstance(value, list):
        return [substitute(item, mapping) for item in value]

    origin = get_origin(value)
    if origin is None or origin is Literal:
        return value
    arguments = get_args(value)
    if not arguments:
        return value
    if origin is Annotated:
        return rebuild_alias(
            origin=Annotated,
            args=(substitute(arguments[0], mapping), *arguments[1:]),
            fallback=value,
        )
    substituted = tuple(substitute(argument, mapping) for argument in arguments)
    return rebuild_alias(origin=origin, args=substituted, fallback=value)


def rebuild_alias(*, origin: Any, args: tuple[Any, ...], fallback: Any) -> Any:
    if origin is types.UnionType:
        origin = Union
    try:
        if len(args) == 1:
            return origin[args[0]]
        return origin[args]
    except TypeError:
        return fallback


def contains_type_variable(value: Any) -> bool:
    """Return whether a type expression mentions a type variable anywhere.

    Raw generic classes such as ``list`` do not count; only variables that
    appear in the expression itself do.
    """
    return _contains_type_variable(value, set())


def _contains_type_variable(value: Any, visited: set[int]) -> bool:
    if isinstance(value, TYPE_VARIABLE_TYPES):
        return True
    if id(value) in visited:
        return False
    visited.add(id(value))

    if isinstance(value, (list, tuple)):
        return any(_contains_type_variable(item, visited) for item in value)
    origin = get_origin(value)
    if origin is None or origin is Literal:
        return False
    arguments = get_args(value)
    if origin is Annotated:
        arguments = arguments[:1]
    return any(_contains_type_variable(argument, visited) for argument in arguments)


def unwrap_annotated(value: Any) -> tuple[Any, tuple[Any, ...]]:
    """Split ``Annotated[T, *metadata]`` into ``T`` and the flattened metadata."""
    metadata: tuple[Any, ...] = ()
    while get_origin(value) is Annotated:
        arguments = get_args(value)
        value = arguments[0]
        metadata = (*metadata, *arguments[1:])
    return value, metadata


def is_union(value: Any) -> bool:
    return get_origin(value) in (Union, types.UnionType)


def unwrap_optional(value: Any) -> tuple[Any, bool]:
    """Strip ``None`` from a union type.

    Returns:
        The remaining type and whether ``None`` was part of the union.

    """
    if not is_union(value):
        return value, False
    arguments = get_args(value)
    remaining = tuple(argument for argument in arguments if argument is not _NONE_TYPE)
    if len(remaining) == len(arguments):
        return value, False
    if not remaining:
        return _NONE_TYPE, True
    if len(remaining) == 1:
        return remaining[0], True
    return Union[remaining], True  # noqa: UP007


def raw_type(value: Any) -> type | None:
    """Return the runtime class behind a type expression, if it has exactly one."""
    value = unwrap_annotated(value)[0]
    origin = get_origin(value)
    if origin is not None:
        if isinstance(origin, type) and not is_union(value):
            return origin
        return None
    if isinstance(value, type):
        return value
    return None


def is_supertype(supertype: Any, subtype: Any) -> bool:
    """Return whether values of ``subtype`` are assignable to ``supertype``.

    Raw classes are compared with ``issubclass``. When ``supertype`` is
    parameterized, the type arguments ``subtype`` gives to the same generic
    class must be equal, with ``Any`` and type variables acting as wildcards.
    A raw ``subtype`` with no known arguments is accepted.
    """
    supertype = unwrap_annotated(supertype)[0]
    subtype = unwrap_annotated(subtype)[0]
    if supertype is Any or supertype is object or isinstance(supertype, TYPE_VARIABLE_TYPES):
        return True
    if subtype is Any:
        return True
    if is_union(subtype):
        return all(is_supertype(supertype, arm) for arm in get_args(subtype))
    if is_union(supertype):
        return any(is_supertype(arm, subtype) for arm in get_args(supertype))
    if supertype is None:
        supertype = _NONE_TYPE
    if subtype is None:
        subtype = _NONE_TYPE

    raw_super = raw_type(supertype)
    raw_sub = raw_type(subtype)
    if raw_super is None or raw_sub is None:
        return bool(supertype == subtype)
    try:
        if not issubclass(raw_sub, raw_super):
            return False
    except TypeError:
        return False

    super_arguments = get_args(supertype)
    if not super_arguments:
        return True
    if raw_sub is raw_super:
        sub_arguments = get_args(subtype)
    else:
        sub_arguments = TypeVariableBinding.of(subtype).arguments_of(raw_super)
    if not sub_arguments:
        return True
    return arguments_match(super_arguments, sub_arguments)


def arguments_match(expected: Iterable[Any], actual: Iterable[Any]) -> bool:
    expected = tuple(expected)
    actual = tuple(actual)
    if len(expected) != len(actual):
        return False
    return all(_argument_matches(left, right) for left, right in zip(expected, actual))


def _argument_matches(expected: Any, actual: Any) -> bool:
    if expected is Any or actual is Any or isinstance(expected, TYPE_VARIABLE_TYPES):
        return True
    if isinstance(expected, list) and isinstance(actual, list):
        return arguments_match(expected, actual)
    expected_origin = get_origin(expected)
    if expected_origin is not None and expected_origin is get_origin(actual):
        return arguments_match(get_args(expected), get_args(actual))
    return bool(expected == actual)


def type_closure(value: Any) -> tuple[Any, ...]:
    """Return ``value`` followed by every supertype, with type arguments resolved.

    Supertypes are listed in method resolution order of the raw class. A
    generic supertype is parameterized with the arguments it receives from
    ``value``; the rest are listed as raw classes.
    """
    raw = raw_type(value)
    if raw is None:
        return (value,)
    binding = TypeVariableBinding.of(value)
    closure: list[Any] = [unwrap_annotated(value)[0]]
    for base in raw.__mro__[1:]:
        if base in _WALK_STOP:
            continue
        base_arguments = binding.arguments_of(base)
        if base_arguments:
            closure.append(rebuild_alias(origin=base, args=base_arguments, fallback=base))
        else:
            closure.append(base)
    return tuple(closure)
