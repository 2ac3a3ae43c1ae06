from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass
from types import TracebackType
from typing import TYPE_CHECKING, Any, get_type_hints

from provisor.exceptions import UnsatisfiedDependencyError
from provisor.markers import MARKER_TYPES, Qualifier, SelfDescriptor, Unqualified, first_of, qualifiers_in
from provisor.scope import Scope
from provisor.type_resolver import (
    contains_type_variable,
    raw_type,
    resolve_type,
    unwrap_annotated,
    unwrap_optional,
)

if TYPE_CHECKING:
    from typing_extensions import Self

    from provisor.descriptors import Descriptor
    from provisor.locator import ServiceHandle, ServiceLocator

_VARIADIC_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


@dataclass(frozen=True, slots=True, kw_only=True)
class Injectee:
    """A single injection point: one parameter of a constructor, provider or subscriber.

    Attributes:
        required_type: The requested type, already resolved in the context of
            the owning class and stripped of ``Annotated`` and ``None``.
        qualifiers: Qualifiers the matching service must carry.
        optional: Whether the parameter may stay unresolved.
        is_self: Whether the parameter receives the descriptor being created.
        unqualified: Qualifier types the matching service must not carry.
        parent: The callable or class declaring the parameter.
        position: Index of the parameter after ``self`` or ``cls`` is skipped.
        name: Parameter name.
        kind: Parameter kind as reported by ``inspect``.
        default: The parameter default, or ``inspect.Parameter.empty``.

    """

    required_type: Any
    qualifiers: frozenset[Qualifier] = frozenset()
    optional: bool = False
    is_self: bool = False
    unqualified: Unqualified | None = None
    parent: Any = None
    position: int = 0
    name: str | None = None
    kind: Any = inspect.Parameter.POSITIONAL_OR_KEYWORD
    default: Any = inspect.Parameter.empty

    @property
    def fallback(self) -> Any:
        """Value passed for an optional parameter that has no matching service."""
        if self.default is inspect.Parameter.empty:
            return None
        return self.default


def type_hints_of(obj: Any) -> dict[str, Any]:
    try:
        return get_type_hints(obj, include_extras=True)
    except (AttributeError, NameError, TypeError):
        return {}


def injectee_from_parameter(
    parameter: inspect.Parameter,
    hints: Mapping[str, Any],
    *,
    parent: Any,
    position: int,
    context_type: Any = None,
    declared_in: type | None = None,
) -> Injectee:
    """Build the injection point for one ``inspect.Parameter``.

    Args:
        parameter: The parameter to describe.
        hints: Resolved type hints of the declaring callable.
        parent: The declaring callable or class.
        position: Index of the parameter among the injected parameters.
        context_type: Concrete type used to resolve type variables of the
            declaring class. ``None`` leaves type variables unresolved.
        declared_in: The class that declares the callable.

    Returns:
        The injection point.

    """
    annotation = hints.get(parameter.name, parameter.annotation)
    if annotation is inspect.Parameter.empty or isinstance(annotation, str):
        annotation = Any
    annotation = resolve_type(context_type, annotation, declared_in=declared_in)

    required_type, metadata = unwrap_annotated(annotation)
    required_type, nullable = unwrap_optional(required_type)
    required_type, inner_metadata = unwrap_annotated(required_type)
    metadata = (*metadata, *inner_metadata)

    return Injectee(
        required_type=required_type,
        qualifiers=frozenset(qualifiers_in(metadata)),
        optional=nullable or parameter.default is not inspect.Parameter.empty,
        is_self=first_of(metadata, SelfDescriptor) is not None,
        unqualified=first_of(metadata, Unqualified),
        parent=parent,
        position=position,
        name=parameter.name,
        kind=parameter.kind,
        default=parameter.default,
    )


def injectees_for(
    target: Callable[..., Any],
    *,
    context_type: Any = None,
    declared_in: type | None = None,
    skip_first: bool = False,
) -> tuple[Injectee, ...]:
    """Describe every injectable parameter of ``target``.

    ``*args`` and ``**kwargs`` are never injected.

    Args:
        target: A function or class.
        context_type: Concrete type used to resolve type variables.
        declared_in: The class that declares ``target``.
        skip_first: Skip the first parameter (``self`` or ``cls``).

    Returns:
        One injection point per parameter, in declaration order.

    """
    parameters = list(inspect.signature(target).parameters.values())
    if skip_first:
        parameters = parameters[1:]
    hints = type_hints_of(target)
    if isinstance(target, type):
        hints = {**type_hints_of(target), **type_hints_of(target.__init__)}  # type: ignore[misc]
    return tuple(
        injectee_from_parameter(
            parameter,
            hints,
            parent=target,
            position=position,
            context_type=context_type,
            declared_in=declared_in,
        )
        for position, parameter in enumerate(parameters)
        if parameter.kind not in _VARIADIC_KINDS
    )


def supports_parameter(
    injectee: Injectee,
    locator: ServiceLocator,
    pending: Iterable[Descriptor] = (),
) -> bool:
    """Return whether ``injectee`` can be satisfied.

    Self parameters and optional parameters are always supported. Bare type
    variables and marker classes never are. Any other parameter needs a
    matching descriptor in ``locator`` or among ``pending`` descriptors that are
    about to be registered.
    """
    if injectee.is_self:
        return True
    if contains_type_variable(injectee.required_type):
        return False
    raw = raw_type(injectee.required_type)
    if raw is not None and issubclass(raw, MARKER_TYPES):
        return False
    if injectee.optional:
        return True
    if raw is None:
        return False
    if locator.get_injectee_descriptor(injectee) is not None:
        return True
    return any(descriptor.matches(injectee) for descriptor in pending)


def service_handle_from_parameter(
    injectee: Injectee,
    locator: ServiceLocator,
) -> ServiceHandle | None:
    """Return a handle for the best service matching ``injectee``.

    Raises:
        UnsatisfiedDependencyError: If a required parameter has no matching
            service.

    Returns:
        The handle, or ``None`` for an optional parameter with no match.

    """
    descriptor = locator.get_injectee_descriptor(injectee)
    if descriptor is None:
        if injectee.optional:
            return None
        raise UnsatisfiedDependencyError(injectee)
    return locator.get_service_handle(descriptor, injectee=injectee)


def service_from_parameter(
    injectee: Injectee,
    locator: ServiceLocator,
    *,
    descriptor: Descriptor | None = None,
) -> Any:
    """Resolve the value for ``injectee`` without tracking its lifecycle.

    Args:
        injectee: The injection point.
        locator: Locator to resolve from.
        descriptor: Descriptor passed to a self parameter.

    Raises:
        UnsatisfiedDependencyError: If a required parameter has no matching
            service.

    Returns:
        The resolved value, or the parameter fallback.

    """
    if injectee.is_self:
        return descriptor
    handle = service_handle_from_parameter(injectee, locator)
    if handle is None:
        return injectee.fallback
    return handle.get_service()


class ParameterScope:
    """Resolve parameters and release the per-lookup services they created.

    Every per-lookup service resolved inside the scope is disposed when the
    scope exits, whether the call it fed succeeded or failed.

    Examples:
        .. code-block:: python

            with ParameterScope(locator, descriptor=descriptor) as scope:
                args, kwargs = scope.arguments(injectees)
                return function(*args, **kwargs)

    """

    def __init__(self, locator: ServiceLocator, *, descriptor: Descriptor | None = None) -> None:
        self._locator = locator
        self._descriptor = descriptor
        self._stack = ExitStack()

    def __enter__(self) -> Self:
        self._stack.__enter__()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool | None:
        return self._stack.__exit__(exc_type, exc_value, traceback)

    def acquire(self, descriptor: Descriptor) -> Any:
        """Return a service of ``descriptor``, releasing it on exit if per-lookup."""
        handle = self._locator.get_service_handle(descriptor)
        return self._track(handle)

    def argument(self, injectee: Injectee) -> Any:
        if injectee.is_self:
            return self._descriptor
        handle = service_handle_from_parameter(injectee, self._locator)
        if handle is None:
            return injectee.fallback
        return self._track(handle)

    def arguments(
        self,
        injectees: Iterable[Injectee],
        preset: Mapping[int, Any] | None = None,
    ) -> tuple[list[Any], dict[str, Any]]:
        """Resolve ``injectees`` into call arguments.

        Args:
            injectees: The injection points of the callable.
            preset: Values supplied by the caller, by parameter position.

        Returns:
            Positional arguments and keyword-only arguments.

        """
        preset = preset or {}
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for injectee in injectees:
            if injectee.position in preset:
                value = preset[injectee.position]
            else:
                value = self.argument(injectee)
            if injectee.kind is inspect.Parameter.KEYWORD_ONLY:
                kwargs[injectee.name or ""] = value
            else:
                args.append(value)
        return args, kwargs

    def _track(self, handle: ServiceHandle) -> Any:
        value = handle.get_service()
        if handle.descriptor.scope is Scope.PER_LOOKUP:
            self._stack.callback(handle.close)
        return value
