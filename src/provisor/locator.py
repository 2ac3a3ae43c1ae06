from __future__ import annotations

import inspect
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from contextvars import ContextVar
from types import TracebackType
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from provisor.defaults import DEFAULT_LOCATOR_NAME
from provisor.descriptors import ClassDescriptor, ConstantDescriptor, Descriptor
from provisor.exceptions import InvalidRegistrationError, LocatorShutdownError, MultiError, ProvisorError
from provisor.injection import Injectee
from provisor.markers import Qualifier, Unqualified, first_of, qualifiers_in
from provisor.scope import Scope
from provisor.type_resolver import unwrap_annotated

if TYPE_CHECKING:
    from typing_extensions import Self

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSET: Any = object()
_current_injectee: ContextVar[Injectee | None] = ContextVar("provisor_current_injectee", default=None)


@runtime_checkable
class PostConstruct(Protocol):
    """Instances with a ``post_construct`` method are initialized after creation."""

    def post_construct(self) -> None: ...


@runtime_checkable
class PreDestroy(Protocol):
    """Instances with a ``pre_destroy`` method are notified before disposal."""

    def pre_destroy(self) -> None: ...


class ConfigurationListener(ABC):
    """Service notified after every committed configuration change."""

    @abstractmethod
    def configuration_changed(self) -> None: ...


class DynamicConfigurationService(ABC):
    """Service that creates the configurations used to register descriptors.

    The locator looks this service up by contract, so a registered service
    with a higher ranking replaces the default one.
    """

    @abstractmethod
    def create_dynamic_configuration(self) -> DynamicConfiguration: ...


class Binder(ABC):
    """Adds a group of related descriptors to a configuration."""

    @abstractmethod
    def configure(self, configuration: DynamicConfiguration) -> None: ...


class DynamicConfiguration:
    """Collect descriptors and register them with the locator in one commit.

    Examples:
        .. code-block:: python

            configuration = locator.create_dynamic_configuration()
            configuration.add_active_descriptor(Repository)
            configuration.add_constant(Settings(url="sqlite://"))
            configuration.commit()

    """

    def __init__(self, locator: ServiceLocator) -> None:
        self._locator = locator
        self._pending: list[Descriptor] = []
        self._committed = False
        self._lock = threading.Lock()

    @property
    def locator(self) -> ServiceLocator:
        return self._locator

    @property
    def pending(self) -> tuple[Descriptor, ...]:
        with self._lock:
            return tuple(self._pending)

    def add_active_descriptor(self, descriptor_or_class: Descriptor | type) -> Descriptor:
        """Add a descriptor, or a class to be created through constructor injection.

        Raises:
            InvalidRegistrationError: If the class is abstract or a protocol.

        Returns:
            The descriptor that will be committed.

        """
        if isinstance(descriptor_or_class, Descriptor):
            descriptor = descriptor_or_class
        else:
            if not isinstance(descriptor_or_class, type):
                msg = f"Expected a class or a descriptor, got {descriptor_or_class!r}"
                raise InvalidRegistrationError(msg)
            if inspect.isabstract(descriptor_or_class) or is_protocol(descriptor_or_class):
                msg = f"Class {descriptor_or_class.__qualname__} cannot be instantiated"
                raise InvalidRegistrationError(msg)
            descriptor = ClassDescriptor(descriptor_or_class, self._locator)
        return self._add(descriptor)

    def add_constant(
        self,
        instance: Any,
        *,
        contracts: Iterable[Any] | None = None,
        qualifiers: Iterable[Qualifier] = (),
        ranking: int | None = None,
    ) -> Descriptor:
        """Add an already constructed instance."""
        return self._add(
            ConstantDescriptor(instance, contracts=contracts, qualifiers=qualifiers, ranking=ranking),
        )

    def bind(self, binder: Binder) -> None:
        binder.configure(self)

    def commit(self) -> None:
        """Register every added descriptor at once and notify configuration listeners.

        Raises:
            InvalidRegistrationError: If the configuration was already committed.

        """
        with self._lock:
            if self._committed:
                msg = "This configuration has already been committed"
                raise InvalidRegistrationError(msg)
            self._committed = True
            pending = tuple(self._pending)
        self._locator.commit(pending)

    def _add(self, descriptor: Descriptor) -> Descriptor:
        with self._lock:
            if self._committed:
                msg = "This configuration has already been committed"
                raise InvalidRegistrationError(msg)
            self._pending.append(descriptor)
        return descriptor


class _DefaultConfigurationService(DynamicConfigurationService):
    def __init__(self, locator: ServiceLocator) -> None:
        self._locator = locator

    def create_dynamic_configuration(self) -> DynamicConfiguration:
        return DynamicConfiguration(self._locator)


class ServiceHandle:
    """A handle on one service, tracking the per-lookup instances it created.

    Closing the handle disposes its own instance if it is per-lookup, then
    every per-lookup instance created beneath it in reverse order. Closing
    twice has no effect. Singletons are never disposed through a handle.
    """

    def __init__(
        self,
        locator: ServiceLocator,
        descriptor: Descriptor,
        injectee: Injectee | None = None,
    ) -> None:
        self._locator = locator
        self._descriptor = descriptor
        self._injectee = injectee
        self._lock = threading.RLock()
        self._service: Any = _UNSET
        self._created = False
        self._closed = False
        self._subordinates: list[ServiceHandle] = []

    @property
    def descriptor(self) -> Descriptor:
        return self._descriptor

    @property
    def injectee(self) -> Injectee | None:
        return self._injectee

    @property
    def is_active(self) -> bool:
        with self._lock:
            return not self._closed

    @property
    def is_service_created(self) -> bool:
        with self._lock:
            return self._service is not _UNSET

    def get_service(self) -> Any:
        """Return the service, creating it on first use."""
        with self._lock:
            if self._closed:
                msg = f"Service handle for {self._descriptor!r} is closed"
                raise ProvisorError(msg)
            if self._service is _UNSET:
                if self._descriptor.scope is Scope.PER_LOOKUP:
                    self._service = self._locator.create(self._descriptor, root=self, injectee=self._injectee)
                    self._created = True
                else:
                    self._service = self._locator.get_service_for(self._descriptor, injectee=self._injectee)
            return self._service

    def add_subordinate(self, handle: ServiceHandle) -> None:
        with self._lock:
            self._subordinates.append(handle)

    def close(self) -> None:
        """Dispose the per-lookup instances owned by this handle.

        Raises:
            MultiError: If any dispose call failed. Every instance is still
                given the chance to be disposed.

        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            service = self._service
            created = self._created
            subordinates = list(reversed(self._subordinates))
            self._subordinates.clear()

        errors: list[BaseException] = []
        if created:
            try:
                self._descriptor.dispose(service)
            except MultiError as error:
                errors.extend(error.errors)
            except Exception as error:  # noqa: BLE001
                errors.append(error)
        for subordinate in subordinates:
            try:
                subordinate.close()
            except MultiError as error:
                errors.extend(error.errors)
        if errors:
            raise MultiError(errors)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ServiceHandle({self._descriptor!r}, active={self.is_active})"


class ServiceLocator:
    """A small service registry with constructor injection and two scopes.

    Descriptors are ordered by ranking, highest first, then by registration
    order. Singletons are created once, under a lock per descriptor, and
    disposed in reverse creation order on ``shutdown``.

    Args:
        name: Name of the locator, used in diagnostics.

    """

    _locator_ids = itertools.count()

    def __init__(self, *, name: str = DEFAULT_LOCATOR_NAME) -> None:
        self.name = name
        self.locator_id = next(self._locator_ids)
        self._lock = threading.RLock()
        self._service_ids = itertools.count()
        self._descriptors: list[Descriptor] = []
        self._singletons: list[Descriptor] = []
        self._creation_locks: dict[int, threading.RLock] = {}
        self._extension_state: dict[Any, Any] = {}
        self._shutdown = False
        self.commit(
            (
                ConstantDescriptor(self, contracts=(ServiceLocator,)),
                ConstantDescriptor(
                    _DefaultConfigurationService(self),
                    contracts=(DynamicConfigurationService,),
                ),
            ),
        )

    def __repr__(self) -> str:
        return f"ServiceLocator(name={self.name!r}, locator_id={self.locator_id})"

    # Registry

    def commit(self, descriptors: Iterable[Descriptor]) -> None:
        """Register ``descriptors`` atomically, then notify configuration listeners."""
        descriptors = tuple(descriptors)
        with self._lock:
            self._check_active()
            for descriptor in descriptors:
                descriptor.service_id = next(self._service_ids)
                descriptor.locator_id = self.locator_id
                self._descriptors.append(descriptor)
            self._descriptors.sort(key=lambda item: (-item.ranking, item.service_id))
        logger.debug("Committed %d descriptor(s) to %r", len(descriptors), self)
        self._notify_listeners()

    def create_dynamic_configuration(self) -> DynamicConfiguration:
        service: DynamicConfigurationService = self.get_service(DynamicConfigurationService)
        return service.create_dynamic_configuration()

    def get_descriptors(self, predicate: Callable[[Descriptor], bool] | None = None) -> list[Descriptor]:
        with self._lock:
            snapshot = list(self._descriptors)
        if predicate is None:
            return snapshot
        return [descriptor for descriptor in snapshot if predicate(descriptor)]

    def reify_descriptor(self, descriptor: Descriptor) -> Descriptor:
        return descriptor

    def get_injectee_descriptor(self, injectee: Injectee) -> Descriptor | None:
        for descriptor in self.get_descriptors():
            if descriptor.matches(injectee):
                return descriptor
        return None

    def get_best_descriptor(self, contract: Any, *qualifiers: Qualifier) -> Descriptor | None:
        return self.get_injectee_descriptor(_lookup(contract, qualifiers))

    def get_all_descriptors(self, contract: Any, *qualifiers: Qualifier) -> list[Descriptor]:
        injectee = _lookup(contract, qualifiers)
        return self.get_descriptors(lambda descriptor: descriptor.matches(injectee))

    # Resolution

    def get_service(self, contract: type[T] | Any, *qualifiers: Qualifier) -> T | Any:
        """Return the best service for ``contract``, or ``None`` if there is none.

        Per-lookup services returned here are not tracked and are never
        disposed.
        """
        descriptor = self.get_best_descriptor(contract, *qualifiers)
        if descriptor is None:
            return None
        return self.get_service_for(descriptor, injectee=_lookup(contract, qualifiers))

    def get_all_services(self, contract: Any, *qualifiers: Qualifier) -> list[Any]:
        return [self.get_service_for(descriptor) for descriptor in self.get_all_descriptors(contract, *qualifiers)]

    def get_service_handle(self, descriptor: Descriptor, injectee: Injectee | None = None) -> ServiceHandle:
        self._check_active()
        return ServiceHandle(self, descriptor, injectee)

    def get_all_service_handles(self, contract: Any, *qualifiers: Qualifier) -> list[ServiceHandle]:
        return [self.get_service_handle(descriptor) for descriptor in self.get_all_descriptors(contract, *qualifiers)]

    def get_service_for(
        self,
        descriptor: Descriptor,
        root: ServiceHandle | None = None,
        injectee: Injectee | None = None,
    ) -> Any:
        """Return a service of ``descriptor``.

        Args:
            descriptor: The descriptor to resolve.
            root: Handle that takes ownership of per-lookup instances created
                for this call.
            injectee: The injection point being satisfied.

        Raises:
            MultiError: If creating the service failed.

        """
        self._check_active()
        if descriptor.scope is Scope.SINGLETON:
            return self._get_singleton(descriptor, injectee)
        if root is not None:
            handle = ServiceHandle(self, descriptor, injectee)
            root.add_subordinate(handle)
            return handle.get_service()
        return self.create(descriptor, root=None, injectee=injectee)

    def create(
        self,
        descriptor: Descriptor,
        *,
        root: ServiceHandle | None,
        injectee: Injectee | None,
    ) -> Any:
        token = _current_injectee.set(injectee)
        try:
            return descriptor.create(root)
        except MultiError:
            raise
        except Exception as error:
            raise MultiError([error]) from error
        finally:
            _current_injectee.reset(token)

    def current_injectee(self) -> Injectee | None:
        """Return the injection point the service being created is requested for."""
        return _current_injectee.get()

    def _get_singleton(self, descriptor: Descriptor, injectee: Injectee | None) -> Any:
        if descriptor.is_cache_set():
            return descriptor.get_cache()
        with self._creation_lock(descriptor):
            if descriptor.is_cache_set():
                return descriptor.get_cache()
            service = self.create(descriptor, root=None, injectee=injectee)
            descriptor.set_cache(service)
            with self._lock:
                self._singletons.append(descriptor)
            return service

    def _creation_lock(self, descriptor: Descriptor) -> threading.RLock:
        with self._lock:
            return self._creation_locks.setdefault(id(descriptor), threading.RLock())

    # Lifecycle

    def post_construct(self, instance: Any) -> None:
        if isinstance(instance, PostConstruct):
            instance.post_construct()

    def pre_destroy(self, instance: Any) -> None:
        if isinstance(instance, PreDestroy):
            instance.pre_destroy()

    def get_extension_state(self, key: Any, factory: Callable[[], T]) -> T:
        """Return state shared by every extension service keyed by ``key``.

        The state lives as long as the locator, so two instances of the same
        extension service see the same bookkeeping.
        """
        with self._lock:
            if key not in self._extension_state:
                self._extension_state[key] = factory()
            return self._extension_state[key]

    @property
    def is_shutdown(self) -> bool:
        with self._lock:
            return self._shutdown

    def shutdown(self) -> None:
        """Dispose every created singleton in reverse creation order.

        Raises:
            MultiError: If any dispose call failed.

        """
        with self._lock:
            if self._shutdown:
                return
            singletons = list(reversed(self._singletons))
            self._singletons.clear()

        errors: list[BaseException] = []
        for descriptor in singletons:
            try:
                descriptor.dispose(descriptor.get_cache())
            except MultiError as error:
                errors.extend(error.errors)
            except Exception as error:  # noqa: BLE001
                errors.append(error)
            finally:
                descriptor.release_cache()

        with self._lock:
            self._shutdown = True
            self._extension_state.clear()
            self._creation_locks.clear()
        logger.debug("Shut down %r", self)
        if errors:
            raise MultiError(errors)

    def _check_active(self) -> None:
        if self._shutdown:
            msg = f"{self!r} has been shut down"
            raise LocatorShutdownError(msg)

    def _notify_listeners(self) -> None:
        for handle in self.get_all_service_handles(ConfigurationListener):
            with handle:
                listener: ConfigurationListener = handle.get_service()
                listener.configuration_changed()


def _lookup(contract: Any, qualifiers: Iterable[Qualifier]) -> Injectee:
    required_type, metadata = unwrap_annotated(contract)
    return Injectee(
        required_type=required_type,
        qualifiers=frozenset((*qualifiers_in(metadata), *qualifiers)),
        unqualified=first_of(metadata, Unqualified),
    )


def is_protocol(cls: type) -> bool:
    return bool(getattr(cls, "_is_protocol", False))
