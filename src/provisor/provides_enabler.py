from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any, ClassVar, get_origin

from provisor.defaults import ENABLER_RANKING
from provisor.descriptors import Descriptor
from provisor.locator import (
    Binder,
    ConfigurationListener,
    DynamicConfiguration,
    DynamicConfigurationService,
    ServiceLocator,
    is_protocol,
)
from provisor.markers import Qualifier, contracts_provided, rank, singleton
from provisor.provides_descriptor import (
    ALL_KINDS,
    INSTANCE_KINDS,
    STATIC_KINDS,
    MemberKind,
    NonInstantiableClassDescriptor,
    ProvidesDescriptor,
)
from provisor.provides_scanner import ProvidesScanner, select_supported

logger = logging.getLogger(__name__)


class AnalysisState(str, Enum):
    UNSEEN = "unseen"
    ANALYZING = "analyzing"
    RECORDED = "recorded"


class AnalysisTable:
    """Per-locator record of the classes scanned for provider members.

    Each class moves from ``UNSEEN`` to ``ANALYZING`` to ``RECORDED``. The
    transition out of ``UNSEEN`` is an atomic check-and-set, so a class is
    analyzed by exactly one caller. The descriptors found for each class are
    cached per member kind.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._states: dict[type, AnalysisState] = {}
        self._by_kind: dict[MemberKind, dict[type, tuple[ProvidesDescriptor, ...]]] = {
            kind: {} for kind in MemberKind
        }

    def state(self, cls: type) -> AnalysisState:
        with self._lock:
            return self._states.get(cls, AnalysisState.UNSEEN)

    def begin(self, cls: type) -> bool:
        """Mark ``cls`` as being analyzed. Return ``False`` if it was not unseen."""
        with self._lock:
            if self._states.get(cls, AnalysisState.UNSEEN) is not AnalysisState.UNSEEN:
                return False
            self._states[cls] = AnalysisState.ANALYZING
            return True

    def finish(self, cls: type) -> None:
        with self._lock:
            self._states[cls] = AnalysisState.RECORDED

    def forget(self, cls: type) -> None:
        with self._lock:
            if self._states.get(cls) is AnalysisState.ANALYZING:
                del self._states[cls]

    def scanned_kinds(self, cls: type) -> frozenset[MemberKind]:
        with self._lock:
            return frozenset(kind for kind, by_class in self._by_kind.items() if cls in by_class)

    def recorded(self, cls: type, kinds: Iterable[MemberKind]) -> tuple[ProvidesDescriptor, ...]:
        with self._lock:
            return tuple(
                descriptor for kind in kinds for descriptor in self._by_kind[kind].get(cls, ())
            )

    def record(
        self,
        cls: type,
        found: Mapping[MemberKind, Iterable[ProvidesDescriptor]],
    ) -> dict[MemberKind, tuple[ProvidesDescriptor, ...]]:
        """Record the descriptors of each member kind not yet recorded for ``cls``.

        Returns:
            The descriptors recorded by this call, by member kind. Kinds that
            were already recorded are left untouched and omitted.

        """
        with self._lock:
            recorded: dict[MemberKind, tuple[ProvidesDescriptor, ...]] = {}
            for kind, descriptors in found.items():
                if cls in self._by_kind[kind]:
                    continue
                recorded[kind] = self._by_kind[kind][cls] = tuple(descriptors)
            return recorded

    def record_if_absent(
        self,
        cls: type,
        kinds: frozenset[MemberKind],
        compute: Callable[[], Mapping[MemberKind, Iterable[ProvidesDescriptor]]],
    ) -> tuple[ProvidesDescriptor, ...]:
        """Compute and record the descriptors of ``kinds`` unless they are already recorded.

        Returns:
            The newly recorded descriptors, or an empty tuple if ``kinds`` had
            already been recorded for ``cls``.

        """
        with self._lock:
            if kinds <= self.scanned_kinds(cls):
                return ()
            recorded = self.record(cls, compute())
            return tuple(descriptor for descriptors in recorded.values() for descriptor in descriptors)


@singleton
@rank(ENABLER_RANKING)
@contracts_provided(ConfigurationListener, DynamicConfigurationService)
class ProvidesAnnotationEnabler(ConfigurationListener, DynamicConfigurationService):
    """Register a descriptor for every provider member of every registered class.

    After each configuration change, every class that has a descriptor in the
    locator and has not been analyzed yet is scanned, and all the provider
    descriptors found in that pass are committed together. Passes repeat until
    one registers nothing, so the classes of provided values are picked up by
    the next pass. Classes already analyzed are skipped, so self-referential
    provider chains terminate. The commits made by a pass do not start nested
    passes on the same thread.

    The enabler also replaces the default configuration service, so classes
    added to a configuration have their static provider members registered
    in the same commit.
    """

    def __init__(self, locator: ServiceLocator) -> None:
        self._locator = locator
        self._scanner = ProvidesScanner(locator)
        self._table: AnalysisTable = locator.get_extension_state(AnalysisTable, AnalysisTable)
        self._pass: _PassState = locator.get_extension_state(_PassState, _PassState)

    def configuration_changed(self) -> None:
        if self._pass.running:
            return
        self._pass.running = True
        try:
            while self._register_new_providers():
                pass
        except Exception:
            logger.exception("Error registering provider members in %r", self._locator)
            raise
        finally:
            self._pass.running = False

    def create_dynamic_configuration(self) -> DynamicConfiguration:
        return ForwardingDynamicConfiguration(
            self,
            self._default_configuration_service().create_dynamic_configuration(),
        )

    def add_class(self, cls: type, configuration: DynamicConfiguration) -> Descriptor:
        """Add ``cls`` to ``configuration`` along with its static provider members.

        A class that cannot be instantiated normally, such as an abstract class,
        a protocol or a namespace class holding only static members, is not
        rejected when it has static provider members. The static provider of
        the class itself is returned in that case, or a descriptor that
        advertises no contracts.

        Raises:
            InvalidRegistrationError: If the class cannot be instantiated and
                has no static provider members.
            DisposeMethodNotFoundError: If a static member names a dispose
                method that does not exist.

        """

        def scan_static_members() -> dict[MemberKind, list[ProvidesDescriptor]]:
            found = {cls: self._scanner.scan(cls, None, STATIC_KINDS)}
            return _keep_supported(found, self._locator, pending=configuration.pending)[cls]

        for descriptor in self._table.record_if_absent(cls, STATIC_KINDS, scan_static_members):
            configuration.add_active_descriptor(descriptor)

        static = self._table.recorded(cls, STATIC_KINDS)
        if not static or _is_instantiable(cls):
            return configuration.add_active_descriptor(cls)
        for descriptor in static:
            if cls in descriptor.contracts:
                return descriptor
        return configuration.add_active_descriptor(NonInstantiableClassDescriptor(cls))

    def _register_new_providers(self) -> bool:
        """Scan the unseen classes once and commit their provider descriptors.

        Returns:
            Whether any descriptor was committed.

        """
        begun: list[type] = []
        found: dict[type, dict[MemberKind, list[ProvidesDescriptor]]] = {}
        try:
            for registered in self._locator.get_descriptors():
                descriptor = self._locator.reify_descriptor(registered)
                cls = descriptor.implementation_class
                if cls is None or not self._table.begin(cls):
                    continue
                begun.append(cls)
                kinds = ALL_KINDS - self._table.scanned_kinds(cls)
                if isinstance(descriptor, NonInstantiableClassDescriptor):
                    kinds -= INSTANCE_KINDS
                found[cls] = self._scanner.scan(cls, descriptor, kinds)
        except Exception:
            for cls in begun:
                self._table.forget(cls)
            raise

        registered_members = frozenset(
            descriptor.member.key
            for descriptor in self._locator.get_descriptors(lambda item: isinstance(item, ProvidesDescriptor))
        )
        supported = _keep_supported(found, self._locator, registered=registered_members)
        accepted: list[ProvidesDescriptor] = []
        for cls, by_kind in supported.items():
            recorded = self._table.record(cls, by_kind)
            self._table.finish(cls)
            accepted.extend(descriptor for descriptors in recorded.values() for descriptor in descriptors)

        if not accepted:
            return False
        logger.debug("Registering %d provider descriptor(s)", len(accepted))
        configuration = self._default_configuration_service().create_dynamic_configuration()
        for descriptor in accepted:
            configuration.add_active_descriptor(descriptor)
        configuration.commit()
        return True

    def _default_configuration_service(self) -> DynamicConfigurationService:
        for descriptor in self._locator.get_all_descriptors(DynamicConfigurationService):
            implementation = descriptor.implementation_class
            if implementation is not None and issubclass(implementation, ProvidesAnnotationEnabler):
                continue
            return self._locator.get_service_for(descriptor)
        msg = f"No default configuration service is registered in {self._locator!r}"
        raise LookupError(msg)


class _PassState(threading.local):
    running = False


class ForwardingDynamicConfiguration(DynamicConfiguration):
    """Configuration that registers static provider members of added classes.

    Everything else is forwarded to the configuration of the default service.
    """

    def __init__(self, enabler: ProvidesAnnotationEnabler, delegate: DynamicConfiguration) -> None:
        super().__init__(delegate.locator)
        self._enabler = enabler
        self._delegate = delegate

    @property
    def pending(self) -> tuple[Descriptor, ...]:
        return self._delegate.pending

    def add_active_descriptor(self, descriptor_or_class: Descriptor | type) -> Descriptor:
        if isinstance(descriptor_or_class, type):
            return self._enabler.add_class(descriptor_or_class, self._delegate)
        return self._delegate.add_active_descriptor(descriptor_or_class)

    def add_constant(
        self,
        instance: Any,
        *,
        contracts: Iterable[Any] | None = None,
        qualifiers: Iterable[Qualifier] = (),
        ranking: int | None = None,
    ) -> Descriptor:
        return self._delegate.add_constant(instance, contracts=contracts, qualifiers=qualifiers, ranking=ranking)

    def commit(self) -> None:
        self._delegate.commit()


class ProvidesModule(Binder):
    """Install the provides enabler in a locator."""

    def configure(self, configuration: DynamicConfiguration) -> None:
        configuration.add_active_descriptor(ProvidesAnnotationEnabler)


def _keep_supported(
    found: Mapping[type, Mapping[MemberKind, list[ProvidesDescriptor]]],
    locator: ServiceLocator,
    *,
    pending: Iterable[Descriptor] = (),
    registered: frozenset[tuple[type, str]] = frozenset(),
) -> dict[type, dict[MemberKind, list[ProvidesDescriptor]]]:
    candidates = [
        descriptor
        for by_kind in found.values()
        for descriptors in by_kind.values()
        for descriptor in descriptors
        if descriptor.member.key not in registered
    ]
    accepted = {id(descriptor) for descriptor in select_supported(candidates, locator, pending)}
    return {
        cls: {
            kind: [descriptor for descriptor in descriptors if id(descriptor) in accepted]
            for kind, descriptors in by_kind.items()
        }
        for cls, by_kind in found.items()
    }


def _is_instantiable(cls: type) -> bool:
    return not (inspect.isabstract(cls) or is_protocol(cls) or _is_utility_class(cls))


def _is_utility_class(cls: type) -> bool:
    """Return whether ``cls`` looks like a namespace for static members only."""
    for name, value in vars(cls).items():
        if name in ("__init__", "__new__"):
            if _takes_arguments(value):
                return False
            continue
        if name.startswith("__"):
            continue
        if inspect.isfunction(value) or isinstance(value, property):
            return False
    return all(_is_class_var(annotation) for annotation in inspect.get_annotations(cls).values())


def _takes_arguments(constructor: Any) -> bool:
    function = constructor.__func__ if isinstance(constructor, (staticmethod, classmethod)) else constructor
    try:
        parameters = list(inspect.signature(function).parameters.values())[1:]
    except (TypeError, ValueError):
        return True
    return bool(parameters)


def _is_class_var(annotation: Any) -> bool:
    if isinstance(annotation, str):
        return "ClassVar" in annotation
    return get_origin(annotation) is ClassVar
