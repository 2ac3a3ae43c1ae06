from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, ClassVar, get_args, get_origin

from provisor.descriptors import Descriptor, value_contracts
from provisor.exceptions import DisposeMethodNotFoundError, InvalidRegistrationError
from provisor.injection import injectees_for, supports_parameter, type_hints_of
from provisor.markers import (
    DisposalHandledBy,
    Provides,
    Qualifier,
    Rank,
    first_of,
    get_provides,
    get_qualifiers,
    get_rank,
    get_scope,
    qualifiers_in,
)
from provisor.provides_descriptor import (
    DisposePolicy,
    InstanceFieldStrategy,
    InstanceMethodStrategy,
    InstanceProviderPolicy,
    MemberKind,
    PreDestroyPolicy,
    ProvidedInstancePolicy,
    ProviderMember,
    ProviderStrategy,
    ProvidesDescriptor,
    StaticFieldStrategy,
    StaticMethodStrategy,
    StaticProviderPolicy,
)
from provisor.scope import Scope
from provisor.type_resolver import (
    contains_type_variable,
    is_supertype,
    raw_type,
    resolve_type,
    unwrap_annotated,
    unwrap_optional,
)

if TYPE_CHECKING:
    from provisor.locator import ServiceLocator

logger = logging.getLogger(__name__)

_NONE_TYPE = type(None)


@dataclass(frozen=True, slots=True, kw_only=True)
class _Candidate:
    member: ProviderMember
    qualifiers: tuple[Qualifier, ...] = ()
    scope: Scope | None = None
    rank: int | None = None
    function: Callable[..., Any] | None = None


class ProvidesScanner:
    """Find the provider members of a class and synthesize their descriptors.

    Static members need no descriptor for the scanned class. Instance members
    are invoked on services of the class, so they are only scanned when the
    descriptor of the class is known.

    Args:
        locator: The locator the synthesized descriptors will be registered in.

    """

    def __init__(self, locator: ServiceLocator) -> None:
        self._locator = locator

    def scan(
        self,
        cls: type,
        owner_descriptor: Descriptor | None,
        kinds: Iterable[MemberKind],
    ) -> dict[MemberKind, list[ProvidesDescriptor]]:
        """Return the descriptors of the provider members of ``cls``, by member kind.

        Args:
            cls: The class to scan.
            owner_descriptor: The descriptor of ``cls``. Required for instance
                member kinds.
            kinds: The member kinds to scan.

        Raises:
            DisposeMethodNotFoundError: If a member names a dispose method that
                does not exist.

        Returns:
            A list of descriptors for each scanned kind, possibly empty.

        """
        kinds = frozenset(kinds)
        if owner_descriptor is None and any(not kind.is_static for kind in kinds):
            msg = f"A descriptor of {cls.__qualname__} is required to scan its instance members"
            raise ValueError(msg)

        found: dict[MemberKind, list[ProvidesDescriptor]] = {kind: [] for kind in kinds}
        for candidate in self._candidates(cls, owner_descriptor, kinds):
            found[candidate.member.kind].append(self._synthesize(candidate, owner_descriptor))
        return found

    def _candidates(
        self,
        cls: type,
        owner_descriptor: Descriptor | None,
        kinds: frozenset[MemberKind],
    ) -> Iterator[_Candidate]:
        context = owner_descriptor.implementation_type if owner_descriptor is not None else cls

        for name in sorted(dir(cls)):
            if name.startswith("_"):
                continue
            try:
                attribute = inspect.getattr_static(cls, name)
            except AttributeError:
                continue
            is_static = isinstance(attribute, (staticmethod, classmethod))
            if not is_static and not inspect.isfunction(attribute):
                continue
            kind = MemberKind.STATIC_METHOD if is_static else MemberKind.INSTANCE_METHOD
            if kind not in kinds or get_provides(attribute) is None:
                continue
            candidate = self._method_candidate(cls, name, attribute, kind, context)
            if candidate is not None:
                yield candidate

        hints = type_hints_of(cls)
        for name, hint in hints.items():
            if name.startswith("_"):
                continue
            annotation, metadata, is_class_var = _split_field_annotation(hint)
            marker = first_of(metadata, Provides)
            if marker is None:
                continue
            kind = MemberKind.STATIC_FIELD if is_class_var else MemberKind.INSTANCE_FIELD
            if kind not in kinds:
                continue
            candidate = self._field_candidate(cls, name, annotation, metadata, marker, kind, context)
            if candidate is not None:
                yield candidate

    def _method_candidate(
        self,
        cls: type,
        name: str,
        attribute: Any,
        kind: MemberKind,
        context: Any,
    ) -> _Candidate | None:
        function = attribute.__func__ if kind.is_static else attribute
        declared_in = _declaring_class(cls, name)
        marker = get_provides(attribute)
        hints = type_hints_of(function)
        if "return" not in hints:
            logger.warning("Ignoring provider method %s.%s: it has no return annotation", cls.__qualname__, name)
            return None

        member_context = None if kind.is_static else context
        resolved = resolve_type(member_context, hints["return"], declared_in=declared_in)
        value_type, metadata, nullable = _split_value_type(resolved)
        if not self._check_value_type(cls, name, value_type):
            return None

        injectees = injectees_for(
            function,
            context_type=member_context,
            declared_in=declared_in,
            skip_first=not isinstance(attribute, staticmethod),
        )
        for injectee in injectees:
            if not injectee.is_self and contains_type_variable(injectee.required_type):
                logger.warning(
                    "Ignoring provider method %s.%s: parameter %r has unresolved type variables in %r",
                    cls.__qualname__,
                    name,
                    injectee.name,
                    injectee.required_type,
                )
                return None

        member = ProviderMember(
            owner=cls,
            declared_in=declared_in,
            name=name,
            kind=kind,
            marker=marker,
            value_type=value_type,
            nullable=nullable,
            injectees=injectees,
        )
        return _Candidate(
            member=member,
            qualifiers=(*get_qualifiers(attribute), *qualifiers_in(metadata)),
            scope=get_scope(attribute),
            rank=get_rank(attribute),
            function=attribute.__get__(None, cls) if kind.is_static else None,
        )

    def _field_candidate(
        self,
        cls: type,
        name: str,
        annotation: Any,
        metadata: tuple[Any, ...],
        marker: Provides,
        kind: MemberKind,
        context: Any,
    ) -> _Candidate | None:
        declared_in = _declaring_class(cls, name)
        member_context = None if kind.is_static else context
        resolved = resolve_type(member_context, annotation, declared_in=declared_in)
        value_type, more_metadata, nullable = _split_value_type(resolved)
        if not self._check_value_type(cls, name, value_type):
            return None

        metadata = (*metadata, *more_metadata)
        member = ProviderMember(
            owner=cls,
            declared_in=declared_in,
            name=name,
            kind=kind,
            marker=marker,
            value_type=value_type,
            nullable=nullable,
        )
        rank_marker = first_of(metadata, Rank)
        return _Candidate(
            member=member,
            qualifiers=qualifiers_in(metadata),
            scope=first_of(metadata, Scope),
            rank=rank_marker.value if rank_marker is not None else None,
        )

    def _check_value_type(self, cls: type, name: str, value_type: Any) -> bool:
        if value_type is _NONE_TYPE or value_type is None:
            logger.warning("Ignoring provider %s.%s: it provides only None", cls.__qualname__, name)
            return False
        if contains_type_variable(value_type):
            logger.warning(
                "Ignoring provider %s.%s: its type %r has unresolved type variables",
                cls.__qualname__,
                name,
                value_type,
            )
            return False
        return True

    def _synthesize(self, candidate: _Candidate, owner_descriptor: Descriptor | None) -> ProvidesDescriptor:
        member = candidate.member
        contracts = member.marker.contracts or value_contracts(member.value_type)
        return ProvidesDescriptor(
            locator=self._locator,
            strategy=_strategy(member, owner_descriptor, candidate.function),
            dispose_policy=self._dispose_policy(member, owner_descriptor),
            contracts=contracts,
            scope=_scope(member, candidate.scope, contracts, owner_descriptor),
            qualifiers=candidate.qualifiers,
            rank=candidate.rank,
        )

    def _dispose_policy(self, member: ProviderMember, owner_descriptor: Descriptor | None) -> DisposePolicy:
        marker = member.marker
        method_name = marker.dispose_method
        if not method_name:
            return PreDestroyPolicy()

        if marker.disposal_handled_by is DisposalHandledBy.PROVIDED_INSTANCE:
            raw = raw_type(member.value_type)
            method = inspect.getattr_static(raw, method_name, None) if raw is not None else None
            if (
                method is None
                or isinstance(method, (staticmethod, classmethod))
                or not callable(method)
                or not _accepts_no_arguments(method)
            ):
                msg = f"Dispose method {method_name!r} of {member} not found on {member.value_type!r}"
                raise DisposeMethodNotFoundError(msg)
            return ProvidedInstancePolicy(method_name)

        attribute = inspect.getattr_static(member.owner, method_name, None)
        is_static = isinstance(attribute, (staticmethod, classmethod))
        if (
            attribute is None
            or is_static != member.kind.is_static
            or not (is_static or inspect.isfunction(attribute))
            or not self._accepts_value(member, attribute, owner_descriptor)
        ):
            msg = (
                f"Dispose method {method_name!r} of {member} not found on "
                f"{member.owner.__qualname__} accepting {member.value_type!r}"
            )
            raise DisposeMethodNotFoundError(msg)
        if is_static:
            return StaticProviderPolicy(method_name, attribute.__get__(None, member.owner))
        return InstanceProviderPolicy(method_name, _require_owner(member, owner_descriptor))

    def _accepts_value(self, member: ProviderMember, attribute: Any, owner_descriptor: Descriptor | None) -> bool:
        function = attribute.__func__ if isinstance(attribute, (staticmethod, classmethod)) else attribute
        parameters = [
            parameter
            for parameter in inspect.signature(function).parameters.values()
            if parameter.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        ]
        if not isinstance(attribute, staticmethod):
            parameters = parameters[1:]
        if len(parameters) != 1:
            return False
        parameter_type = type_hints_of(function).get(parameters[0].name, Any)
        if not member.kind.is_static and owner_descriptor is not None:
            parameter_type = resolve_type(
                owner_descriptor.implementation_type,
                parameter_type,
                declared_in=_declaring_class(member.owner, attribute.__name__),
            )
        return is_supertype(parameter_type, member.value_type)


def select_supported(
    descriptors: Iterable[ProvidesDescriptor],
    locator: ServiceLocator,
    pending: Iterable[Descriptor] = (),
) -> list[ProvidesDescriptor]:
    """Drop the descriptors with a parameter that cannot be satisfied.

    A parameter is satisfied by a service already registered in ``locator``,
    by one of the ``pending`` descriptors, or by another descriptor of the same
    batch. Dropping a descriptor may leave
    others unsatisfied, so the check repeats until nothing changes.
    """
    accepted = list(descriptors)
    pending = list(pending)
    changed = True
    while changed:
        changed = False
        for descriptor in list(accepted):
            others = [*pending, *(other for other in accepted if other is not descriptor)]
            unsupported = [
                injectee.name
                for injectee in descriptor.member.injectees
                if not supports_parameter(injectee, locator, others)
            ]
            if unsupported:
                logger.warning(
                    "Ignoring provider %s: unsupported parameter(s) %s",
                    descriptor.member,
                    ", ".join(repr(name) for name in unsupported),
                )
                accepted.remove(descriptor)
                changed = True
    return accepted


def _strategy(member: ProviderMember, owner_descriptor: Descriptor | None, function: Any) -> ProviderStrategy:
    if member.kind is MemberKind.STATIC_METHOD:
        return StaticMethodStrategy(member, function)
    if member.kind is MemberKind.STATIC_FIELD:
        return StaticFieldStrategy(member)
    owner = _require_owner(member, owner_descriptor)
    if member.kind is MemberKind.INSTANCE_METHOD:
        return InstanceMethodStrategy(member, owner)
    return InstanceFieldStrategy(member, owner)


def _require_owner(member: ProviderMember, owner_descriptor: Descriptor | None) -> Descriptor:
    if owner_descriptor is None:
        msg = f"Instance provider {member} has no descriptor for its owner {member.owner.__qualname__}"
        raise InvalidRegistrationError(msg)
    return owner_descriptor


def _scope(
    member: ProviderMember,
    scope_marker: Scope | None,
    contracts: Iterable[Any],
    owner_descriptor: Descriptor | None,
) -> Scope:
    if member.nullable:
        return Scope.PER_LOOKUP
    if scope_marker is not None:
        return scope_marker
    for contract in contracts:
        contract_scope = get_scope(raw_type(contract))
        if contract_scope is not None:
            return contract_scope
    if not member.kind.is_static and owner_descriptor is not None:
        return owner_descriptor.scope
    return Scope.PER_LOOKUP


def _split_value_type(resolved: Any) -> tuple[Any, tuple[Any, ...], bool]:
    value_type, metadata = unwrap_annotated(resolved)
    value_type, nullable = unwrap_optional(value_type)
    value_type, more_metadata = unwrap_annotated(value_type)
    return value_type, (*metadata, *more_metadata), nullable


def _split_field_annotation(hint: Any) -> tuple[Any, tuple[Any, ...], bool]:
    metadata: tuple[Any, ...] = ()
    is_class_var = False
    while True:
        origin = get_origin(hint)
        if origin is ClassVar:
            is_class_var = True
            arguments = get_args(hint)
            hint = arguments[0] if arguments else Any
        elif origin is Annotated:
            arguments = get_args(hint)
            hint = arguments[0]
            metadata = (*metadata, *arguments[1:])
        else:
            return hint, metadata, is_class_var


def _declaring_class(cls: type, name: str) -> type:
    for klass in cls.__mro__:
        if name in vars(klass) or name in inspect.get_annotations(klass):
            return klass
    return cls


def _accepts_no_arguments(method: Any) -> bool:
    try:
        parameters = list(inspect.signature(method).parameters.values())[1:]
    except (TypeError, ValueError):
        return True
    return all(
        parameter.default is not inspect.Parameter.empty
        or parameter.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        for parameter in parameters
    )
