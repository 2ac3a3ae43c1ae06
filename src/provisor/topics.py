from __future__ import annotations

import inspect
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar, get_args

from provisor.descriptors import Descriptor
from provisor.exceptions import ServiceNotFoundError
from provisor.injection import Injectee, ParameterScope, injectees_for, supports_parameter, type_hints_of
from provisor.locator import Binder, ConfigurationListener, DynamicConfiguration, ServiceLocator
from provisor.markers import (
    MessageReceiver,
    Named,
    Qualifier,
    SubscribeTo,
    Unqualified,
    contracts_provided,
    first_of,
    singleton,
)
from provisor.scope import Scope
from provisor.type_resolver import is_supertype, unwrap_annotated

if TYPE_CHECKING:
    from provisor.locator import ServiceHandle

logger = logging.getLogger(__name__)

M = TypeVar("M")


class Topic(Generic[M]):
    """A channel for messages of one type, optionally narrowed by qualifiers.

    Inject a topic by annotating a parameter with ``Topic[Event]``; qualifiers
    in ``Annotated`` metadata become the qualifiers of the topic. Publishing
    delivers the message to every subscriber of a ``@message_receiver`` class
    whose message parameter accepts the runtime type of the message.

    Examples:
        .. code-block:: python

            class Orders:
                def __init__(self, events: Topic[OrderPlaced]) -> None:
                    self._events = events

                def place(self, order: Order) -> None:
                    self._events.publish(OrderPlaced(order))

    """

    def __init__(
        self,
        locator: ServiceLocator,
        message_type: Any = object,
        qualifiers: Iterable[Qualifier] = (),
    ) -> None:
        self._locator = locator
        self._message_type = message_type
        self._qualifiers = frozenset(qualifiers)

    @property
    def message_type(self) -> Any:
        return self._message_type

    @property
    def qualifiers(self) -> frozenset[Qualifier]:
        return self._qualifiers

    def publish(self, message: Any) -> None:
        """Deliver ``message`` to every subscriber of this topic.

        Raises:
            ServiceNotFoundError: If no ``TopicDistributionService`` is registered.

        """
        service = self._locator.get_service(TopicDistributionService)
        if service is None:
            msg = f"There is no {TopicDistributionService.__name__} to publish {message!r} with"
            raise ServiceNotFoundError(msg)
        service.distribute_message(self, message)

    def named(self, name: str) -> Topic[M]:
        return self.qualified_with(Named(name))

    def of_type(self, message_type: Any) -> Topic[Any]:
        return Topic(self._locator, message_type, self._qualifiers)

    def qualified_with(self, *qualifiers: Qualifier) -> Topic[M]:
        return Topic(self._locator, self._message_type, (*self._qualifiers, *qualifiers))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Topic):
            return NotImplemented
        return (
            self._locator is other._locator
            and self._message_type == other._message_type
            and self._qualifiers == other._qualifiers
        )

    def __hash__(self) -> int:
        return hash((id(self._locator), self._message_type, self._qualifiers))

    def __repr__(self) -> str:
        qualifiers = sorted(repr(qualifier) for qualifier in self._qualifiers)
        return f"Topic[{self._message_type!r}](qualifiers=[{', '.join(qualifiers)}])"


class TopicDescriptor(Descriptor):
    """Creates the ``Topic`` requested by the current injection point.

    It matches every ``Topic`` request regardless of qualifiers, since the
    qualifiers of the request become the qualifiers of the topic.
    """

    def __init__(self, locator: ServiceLocator) -> None:
        super().__init__(contracts=(Topic,), implementation_type=Topic, scope=Scope.PER_LOOKUP)
        self._locator = locator

    def create(self, root: ServiceHandle | None) -> Any:
        injectee = self._locator.current_injectee()
        if injectee is None:
            return Topic(self._locator)
        arguments = get_args(injectee.required_type)
        message_type = arguments[0] if arguments else object
        return Topic(self._locator, message_type, injectee.qualifiers)

    def dispose(self, instance: Any) -> None:
        return None

    def matches_qualifiers(self, qualifiers: frozenset[Qualifier], unqualified: Unqualified | None = None) -> bool:
        return True


@dataclass(frozen=True, slots=True, kw_only=True)
class Subscriber:
    """A method of a message receiver that accepts messages through one parameter.

    Attributes:
        owner: The class declaring the method.
        name: Method name.
        is_static: Whether the method is a ``staticmethod`` or ``classmethod``.
        function: The callable invoked for static methods.
        parameter_index: Position of the message parameter.
        parameter_type: Declared type of the message parameter.
        qualifiers: Qualifiers a topic must carry to reach this subscriber.
        unqualified: Qualifier types a topic must not carry, if given.
        permitted_types: Message types permitted by the owner's
            ``@message_receiver`` marker. Empty permits all.
        owner_descriptor: Descriptor used to obtain the receiving instance.
        injectees: Injection points of every parameter.

    """

    owner: type
    name: str
    is_static: bool
    function: Callable[..., Any] | None
    parameter_index: int
    parameter_type: Any
    qualifiers: frozenset[Qualifier] = frozenset()
    unqualified: Unqualified | None = None
    permitted_types: tuple[Any, ...] = ()
    owner_descriptor: Descriptor | None = None
    injectees: tuple[Injectee, ...] = field(default=(), repr=False)

    def is_subscribed_to(self, topic: Topic[Any], message: Any) -> bool:
        """Return whether ``message`` published to ``topic`` is delivered here.

        Types are matched against the runtime type of the message and
        qualifiers against the qualifiers of the topic.
        """
        message_type = type(message)
        if not is_supertype(self.parameter_type, message_type):
            return False
        if self.permitted_types and not any(
            is_supertype(permitted, message_type) for permitted in self.permitted_types
        ):
            return False
        if not self.qualifiers <= topic.qualifiers:
            return False
        if self.unqualified is None or not topic.qualifiers:
            return True
        if not self.unqualified.types:
            return False
        return not any(isinstance(qualifier, self.unqualified.types) for qualifier in topic.qualifiers)

    def __str__(self) -> str:
        return f"{self.owner.__qualname__}.{self.name}"


class TopicDistributionService(ABC):
    """Delivers messages published to topics."""

    @abstractmethod
    def distribute_message(self, topic: Topic[Any], message: Any) -> None: ...


@dataclass(slots=True)
class _SubscriberRegistry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    analyzed: set[type] = field(default_factory=set)
    subscribers: tuple[Subscriber, ...] = ()

    def claim(self, cls: type) -> bool:
        with self.lock:
            if cls in self.analyzed:
                return False
            self.analyzed.add(cls)
            return True

    def extend(self, subscribers: Iterable[Subscriber]) -> None:
        with self.lock:
            self.subscribers = (*self.subscribers, *subscribers)

    def snapshot(self) -> tuple[Subscriber, ...]:
        with self.lock:
            return self.subscribers


@singleton
@contracts_provided(TopicDistributionService, ConfigurationListener)
class DefaultTopicDistributionService(TopicDistributionService, ConfigurationListener):
    """Deliver messages to subscriber methods of ``@message_receiver`` services.

    Subscribers are discovered after every configuration change. Each class is
    scanned once. Messages are delivered sequentially in discovery order; a
    failing subscriber is logged and does not prevent delivery to the others.
    Receiving services are created on demand, and per-lookup services used for
    a delivery are disposed right after it.
    """

    def __init__(self, locator: ServiceLocator) -> None:
        self._locator = locator
        self._registry: _SubscriberRegistry = locator.get_extension_state(_SubscriberRegistry, _SubscriberRegistry)

    @property
    def subscribers(self) -> tuple[Subscriber, ...]:
        return self._registry.snapshot()

    def distribute_message(self, topic: Topic[Any], message: Any) -> None:
        subscribers = [
            subscriber for subscriber in self._registry.snapshot() if subscriber.is_subscribed_to(topic, message)
        ]
        if not subscribers:
            logger.warning("Ignoring message %r because %r has no subscribers", message, topic)
            return
        for subscriber in subscribers:
            self._deliver(topic, message, subscriber)

    def configuration_changed(self) -> None:
        try:
            self._find_new_subscribers()
        except Exception:
            logger.exception("Error discovering subscribers in %r", self._locator)
            raise

    def _deliver(self, topic: Topic[Any], message: Any, subscriber: Subscriber) -> None:
        owner = subscriber.owner_descriptor
        try:
            with ParameterScope(self._locator, descriptor=owner) as scope:
                if subscriber.is_static:
                    target = subscriber.function
                else:
                    service = None if owner is None else scope.acquire(owner)
                    if service is None:
                        logger.error(
                            "Subscriber %s is an instance method, but its service resolved to None",
                            subscriber,
                        )
                        return
                    target = getattr(service, subscriber.name)
                args, kwargs = scope.arguments(subscriber.injectees, {subscriber.parameter_index: message})
                target(*args, **kwargs)
        except Exception:
            logger.exception("Error distributing message %r for %r to subscriber %s", message, topic, subscriber)

    def _find_new_subscribers(self) -> None:
        found: list[Subscriber] = []
        for registered in self._locator.get_descriptors(_is_message_receiver):
            descriptor = self._locator.reify_descriptor(registered)
            cls = descriptor.implementation_class
            if cls is None or not self._registry.claim(cls):
                continue
            permitted = tuple(
                permitted_type
                for qualifier in descriptor.qualifiers
                if isinstance(qualifier, MessageReceiver)
                for permitted_type in qualifier.permitted_types
            )
            found.extend(self._subscribers_of(cls, descriptor, permitted))

        if not found:
            return
        for subscriber in found:
            logger.info("Found new subscriber %s", subscriber)
        logger.info("Found %d new subscriber(s)", len(found))
        self._registry.extend(found)

    def _subscribers_of(
        self,
        cls: type,
        descriptor: Descriptor,
        permitted: tuple[Any, ...],
    ) -> Iterable[Subscriber]:
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
            subscriber = self._subscriber_from_method(cls, name, attribute, is_static, descriptor, permitted)
            if subscriber is not None:
                yield subscriber

    def _subscriber_from_method(  # noqa: PLR0913
        self,
        cls: type,
        name: str,
        attribute: Any,
        is_static: bool,
        descriptor: Descriptor,
        permitted: tuple[Any, ...],
    ) -> Subscriber | None:
        function = attribute.__func__ if is_static else attribute
        hints = type_hints_of(function)
        context = None if is_static else descriptor.implementation_type
        injectees = injectees_for(
            function,
            context_type=context,
            skip_first=not isinstance(attribute, staticmethod),
        )

        message_parameters = [
            injectee for injectee in injectees if _is_message_parameter(hints.get(injectee.name or ""))
        ]
        if not message_parameters:
            return None
        if len(message_parameters) > 1:
            logger.warning("Two message parameters in method %s of service %s", name, cls.__qualname__)
            return None
        message_parameter = message_parameters[0]

        for injectee in injectees:
            if injectee is not message_parameter and not supports_parameter(injectee, self._locator):
                logger.warning(
                    "Unsupported parameter %r at index %d in method %s of service %s",
                    injectee.name,
                    injectee.position,
                    name,
                    cls.__qualname__,
                )
                return None

        if hints.get("return", type(None)) is not type(None):
            logger.warning(
                "Subscriber method %s of service %s has return type %r, "
                "but values returned from subscriber methods are ignored",
                name,
                cls.__qualname__,
                hints["return"],
            )

        parameter_type = message_parameter.required_type
        if permitted and not any(is_supertype(permitted_type, parameter_type) for permitted_type in permitted):
            logger.warning(
                "Subscriber method %s of service %s will receive no messages of its parameter type %r "
                "outside the permitted types %r",
                name,
                cls.__qualname__,
                parameter_type,
                permitted,
            )

        return Subscriber(
            owner=cls,
            name=name,
            is_static=is_static,
            function=attribute.__get__(None, cls) if is_static else None,
            parameter_index=message_parameter.position,
            parameter_type=parameter_type,
            qualifiers=message_parameter.qualifiers,
            unqualified=message_parameter.unqualified,
            permitted_types=permitted,
            owner_descriptor=descriptor,
            injectees=injectees,
        )


class TopicsModule(Binder):
    """Install topic distribution and ``Topic`` injection in a locator."""

    def configure(self, configuration: DynamicConfiguration) -> None:
        configuration.add_active_descriptor(DefaultTopicDistributionService)
        configuration.add_active_descriptor(TopicDescriptor(configuration.locator))


def _is_message_receiver(descriptor: Descriptor) -> bool:
    return any(isinstance(qualifier, MessageReceiver) for qualifier in descriptor.qualifiers)


def _is_message_parameter(annotation: Any) -> bool:
    if annotation is None:
        return False
    return first_of(unwrap_annotated(annotation)[1], SubscribeTo) is not None


__all__ = [
    "DefaultTopicDistributionService",
    "Subscriber",
    "Topic",
    "TopicDescriptor",
    "TopicDistributionService",
    "TopicsModule",
]
