from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable
from types import TracebackType
from typing import TYPE_CHECKING, Any, TypeVar

from provisor.defaults import DEFAULT_LOCATOR_NAME
from provisor.descriptors import ConstantDescriptor
from provisor.exceptions import ServiceNotFoundError, UnsatisfiedDependencyError
from provisor.injection import Injectee, injectee_from_parameter, supports_parameter, type_hints_of
from provisor.locator import Binder, ServiceHandle, ServiceLocator
from provisor.markers import Qualifier
from provisor.provides_enabler import ProvidesModule
from provisor.topics import Topic, TopicsModule

if TYPE_CHECKING:
    from typing_extensions import Self

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Services:
    """A service locator with topic distribution and provider members installed.

    Args:
        *binders: What to register. A ``Binder`` configures the locator
            itself, a class is registered for constructor injection, and any
            other object is registered as a constant.
        name: Name of the underlying locator.
        enable_topics: Install ``Topic`` injection and message distribution.
        enable_provides: Install discovery of ``@provides`` members.

    Examples:
        .. code-block:: python

            with Services(Settings(url="sqlite://"), Repository, Notifications) as services:
                repository = services.get_service(Repository)

    """

    def __init__(
        self,
        *binders: Binder | type | Any,
        name: str = DEFAULT_LOCATOR_NAME,
        enable_topics: bool = True,
        enable_provides: bool = True,
    ) -> None:
        self._locator = ServiceLocator(name=name)
        self._lock = threading.Lock()
        self._root = self._new_root()

        modules: list[Binder] = []
        if enable_topics:
            modules.append(TopicsModule())
        if enable_provides:
            modules.append(ProvidesModule())
        if modules:
            configuration = self._locator.create_dynamic_configuration()
            for module in modules:
                configuration.bind(module)
            configuration.commit()

        if binders:
            configuration = self._locator.create_dynamic_configuration()
            for binder in binders:
                if isinstance(binder, Binder):
                    configuration.bind(binder)
                elif isinstance(binder, type):
                    configuration.add_active_descriptor(binder)
                else:
                    configuration.add_constant(binder)
            configuration.commit()
        logger.debug("Created %r with %d binder(s)", self._locator, len(binders))

    @property
    def locator(self) -> ServiceLocator:
        return self._locator

    def get_service(self, contract: type[T] | Any, *qualifiers: Qualifier) -> T:
        """Return the best service for ``contract``.

        Raises:
            ServiceNotFoundError: If no registered service matches, or if the
                matching service was provided as ``None``.
            MultiError: If creating the service failed.

        """
        descriptor = self._locator.get_best_descriptor(contract, *qualifiers)
        if descriptor is None:
            msg = f"There is no service of type {contract!r}"
            raise ServiceNotFoundError(msg)
        service = self._locator.get_service(contract, *qualifiers)
        if service is None:
            msg = f"The service of type {contract!r} from {descriptor!r} is None"
            raise ServiceNotFoundError(msg)
        return service

    def topic(self, message_type: type[T] | Any, *qualifiers: Qualifier) -> Topic[T]:
        return Topic(self._locator, message_type, qualifiers)

    def supports_parameter(self, function: Callable[..., Any], name: str, *, context_type: Any = None) -> bool:
        """Return whether parameter ``name`` of ``function`` could be resolved."""
        return supports_parameter(self._injectee(function, name, context_type), self._locator)

    def resolve_parameter(self, function: Callable[..., Any], name: str, *, context_type: Any = None) -> Any:
        """Resolve the value for parameter ``name`` of ``function``.

        Per-lookup services created here are disposed by ``release_parameters``
        or ``shutdown``.

        Args:
            function: The function declaring the parameter.
            name: Parameter name.
            context_type: Concrete type used to resolve type variables of the
                parameter's declaring class.

        Raises:
            UnsatisfiedDependencyError: If a required parameter has no
                matching service.

        Returns:
            The resolved value, or the parameter default for an optional
            parameter with no matching service.

        """
        injectee = self._injectee(function, name, context_type)
        if injectee.is_self:
            return None
        descriptor = self._locator.get_injectee_descriptor(injectee)
        if descriptor is None:
            if injectee.optional:
                return injectee.fallback
            raise UnsatisfiedDependencyError(injectee)
        with self._lock:
            root = self._root
        return self._locator.get_service_for(descriptor, root=root, injectee=injectee)

    def release_parameters(self) -> None:
        """Dispose every per-lookup service created by ``resolve_parameter``."""
        with self._lock:
            root, self._root = self._root, self._new_root()
        root.close()

    def shutdown(self) -> None:
        with self._lock:
            root = self._root
        try:
            root.close()
        finally:
            self._locator.shutdown()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.shutdown()

    def _new_root(self) -> ServiceHandle:
        return ServiceHandle(self._locator, ConstantDescriptor(object()))

    def _injectee(self, function: Callable[..., Any], name: str, context_type: Any) -> Injectee:
        parameters = inspect.signature(function).parameters
        if name not in parameters:
            msg = f"{function!r} has no parameter named {name!r}"
            raise ValueError(msg)
        parameter = parameters[name]
        return injectee_from_parameter(
            parameter,
            type_hints_of(function),
            parent=function,
            position=list(parameters).index(name),
            context_type=context_type,
        )
