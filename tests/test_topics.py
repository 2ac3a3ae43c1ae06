"""Tests for topics, subscriber discovery and message distribution."""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from numbers import Number
from typing import Annotated

import pytest

from provisor.exceptions import ServiceNotFoundError
from provisor.locator import ServiceLocator
from provisor.markers import (
    Named,
    Qualifier,
    SubscribeTo,
    Unqualified,
    message_receiver,
    provides,
    singleton,
)
from provisor.topics import DefaultTopicDistributionService, Subscriber, Topic, TopicDistributionService

RECEIVED: list[tuple[str, str]] = []


@pytest.fixture(autouse=True)
def clear_received() -> Iterator[None]:
    RECEIVED.clear()
    yield
    RECEIVED.clear()


def register(locator: ServiceLocator, *classes: type) -> None:
    configuration = locator.create_dynamic_configuration()
    for cls in classes:
        configuration.add_active_descriptor(cls)
    configuration.commit()


def distribution(locator: ServiceLocator) -> DefaultTopicDistributionService:
    service = locator.get_service(TopicDistributionService)
    assert isinstance(service, DefaultTopicDistributionService)
    return service


class Event:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class OrderPlaced(Event):
    pass


class OrderCancelled(Event):
    pass


@dataclass(frozen=True)
class Audit(Qualifier):
    pass


class Missing:
    pass


class Unrelated:
    pass


@message_receiver()
class Orders:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("on_event", event.name))

    def on_placed(self, event: Annotated[OrderPlaced, SubscribeTo()]) -> None:
        RECEIVED.append(("on_placed", event.name))

    def helper(self, event: Event) -> None:
        RECEIVED.append(("helper", event.name))


@message_receiver()
class QualifiedReceiver:
    def on_any(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("on_any", event.name))

    def on_not_named(self, event: Annotated[Event, SubscribeTo(), Unqualified(Named)]) -> None:
        RECEIVED.append(("on_not_named", event.name))

    def on_unqualified(self, event: Annotated[Event, SubscribeTo(), Unqualified()]) -> None:
        RECEIVED.append(("on_unqualified", event.name))

    def on_urgent(self, event: Annotated[Event, SubscribeTo(), Named("urgent")]) -> None:
        RECEIVED.append(("on_urgent", event.name))


@message_receiver(OrderPlaced)
class PlacedOnly:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("placed_only", event.name))


@message_receiver(OrderPlaced)
class CancelledOutsidePermitted:
    def on_cancelled(self, event: Annotated[OrderCancelled, SubscribeTo()]) -> None:
        RECEIVED.append(("on_cancelled", event.name))


@message_receiver()
class PerLookupReceiver:
    def __init__(self) -> None:
        RECEIVED.append(("created", "per_lookup"))

    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("received", event.name))

    def pre_destroy(self) -> None:
        RECEIVED.append(("destroyed", "per_lookup"))


@message_receiver()
@singleton
class SingletonReceiver:
    def __init__(self) -> None:
        RECEIVED.append(("created", "singleton"))

    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("received", event.name))

    def pre_destroy(self) -> None:
        RECEIVED.append(("destroyed", "singleton"))


@message_receiver()
class FailingReceiver:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        raise RuntimeError("subscriber failed")


@message_receiver()
class StaticReceiver:
    @staticmethod
    def on_event(event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("static", event.name))

    @classmethod
    def on_placed(cls, event: Annotated[OrderPlaced, SubscribeTo()]) -> None:
        RECEIVED.append((cls.__name__, event.name))


@message_receiver()
class NumberReceiver:
    def on_number(self, number: Annotated[Number, SubscribeTo()]) -> None:
        RECEIVED.append(("number", str(number)))


class Clock:
    def now(self) -> str:
        return "now"

    def pre_destroy(self) -> None:
        RECEIVED.append(("clock", "closed"))


@message_receiver()
@singleton
class WithServices:
    def on_event(self, event: Annotated[Event, SubscribeTo()], clock: Clock) -> None:
        RECEIVED.append((clock.now(), event.name))


@message_receiver()
class Misdeclared:
    def not_a_subscriber(self, event: Event) -> None:
        pass

    def returns(self, event: Annotated[Event, SubscribeTo()]) -> str:
        RECEIVED.append(("returns", event.name))
        return "ignored"

    def two_messages(
        self,
        first: Annotated[Event, SubscribeTo()],
        second: Annotated[Event, SubscribeTo()],
    ) -> None:
        pass

    def unsupported(self, event: Annotated[Event, SubscribeTo()], missing: Missing) -> None:
        pass


class ProvidedReceiver:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("provided", event.name))


class ReceiverFactory:
    @provides()
    @message_receiver()
    def receiver(self) -> ProvidedReceiver:
        return ProvidedReceiver()


class NullReceiver:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("null", event.name))


class NullReceiverFactory:
    @provides()
    @message_receiver()
    def receiver(self) -> NullReceiver | None:
        return None


class UrgentPublisher:
    def __init__(self, events: Annotated[Topic[OrderPlaced], Named("urgent")]) -> None:
        self.events = events


class NotAReceiver:
    def on_event(self, event: Annotated[Event, SubscribeTo()]) -> None:
        RECEIVED.append(("not_a_receiver", event.name))


class TestTopic:
    def test_injected_topic_carries_type_and_qualifiers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, UrgentPublisher)

        topic = topics_locator.get_service(UrgentPublisher).events

        assert isinstance(topic, Topic)
        assert topic.message_type is OrderPlaced
        assert topic.qualifiers == frozenset({Named("urgent")})

    def test_looked_up_topic(self, topics_locator: ServiceLocator) -> None:
        topic = topics_locator.get_service(Topic[Event])

        assert topic == Topic(topics_locator, Event)
        assert topic.qualifiers == frozenset()

    def test_derived_topics(self, locator: ServiceLocator) -> None:
        topic = Topic(locator, Event)

        assert topic.named("urgent") == Topic(locator, Event, [Named("urgent")])
        assert topic.of_type(OrderPlaced).message_type is OrderPlaced
        assert topic.qualified_with(Audit()).qualifiers == frozenset({Audit()})
        assert hash(topic) == hash(Topic(locator, Event))
        assert topic != Topic(locator, OrderPlaced)
        assert "Event" in repr(topic)

    def test_publish_without_distribution_service(self, locator: ServiceLocator) -> None:
        with pytest.raises(ServiceNotFoundError):
            Topic(locator, Event).publish(Event("lost"))


class TestSubscriber:
    def subscriber(self, **overrides: object) -> Subscriber:
        values: dict[str, object] = {
            "owner": Orders,
            "name": "on_event",
            "is_static": False,
            "function": None,
            "parameter_index": 0,
            "parameter_type": Event,
        }
        values.update(overrides)
        return Subscriber(**values)  # type: ignore[arg-type]

    def test_parameter_type_must_accept_message_type(self, locator: ServiceLocator) -> None:
        subscriber = self.subscriber(parameter_type=OrderPlaced)
        topic = Topic(locator, Event)

        assert subscriber.is_subscribed_to(topic, OrderPlaced("placed"))
        assert not subscriber.is_subscribed_to(topic, Event("event"))
        assert not subscriber.is_subscribed_to(topic, OrderCancelled("cancelled"))

    def test_topic_type_does_not_narrow_matching(self, locator: ServiceLocator) -> None:
        subscriber = self.subscriber(parameter_type=Number)

        assert subscriber.is_subscribed_to(Topic(locator), 3)
        assert subscriber.is_subscribed_to(Topic(locator, str), 2.5)
        assert not subscriber.is_subscribed_to(Topic(locator, Number), "3")

    def test_permitted_types(self, locator: ServiceLocator) -> None:
        subscriber = self.subscriber(permitted_types=(OrderPlaced,))
        topic = Topic(locator, Event)

        assert subscriber.is_subscribed_to(topic, OrderPlaced("placed"))
        assert not subscriber.is_subscribed_to(topic, OrderCancelled("cancelled"))
        assert not subscriber.is_subscribed_to(topic, Event("event"))

    def test_required_qualifiers(self, locator: ServiceLocator) -> None:
        subscriber = self.subscriber(qualifiers=frozenset({Named("urgent")}))
        message = Event("event")

        assert subscriber.is_subscribed_to(Topic(locator, Event, [Named("urgent"), Audit()]), message)
        assert not subscriber.is_subscribed_to(Topic(locator, Event), message)

    def test_unqualified(self, locator: ServiceLocator) -> None:
        bare = self.subscriber(unqualified=Unqualified())
        not_named = self.subscriber(unqualified=Unqualified(Named))
        message = Event("event")

        assert bare.is_subscribed_to(Topic(locator, Event), message)
        assert not bare.is_subscribed_to(Topic(locator, Event, [Audit()]), message)
        assert not_named.is_subscribed_to(Topic(locator, Event, [Audit()]), message)
        assert not not_named.is_subscribed_to(Topic(locator, Event, [Named("urgent")]), message)

    def test_str(self) -> None:
        assert str(self.subscriber()) == "Orders.on_event"


class TestDiscovery:
    def test_only_marked_parameters_make_subscribers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, Orders)

        assert sorted(subscriber.name for subscriber in distribution(topics_locator).subscribers) == [
            "on_event",
            "on_placed",
        ]

    def test_classes_without_marker_are_not_scanned(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, NotAReceiver)

        assert distribution(topics_locator).subscribers == ()

    def test_each_class_is_scanned_once(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, Orders)
        register(topics_locator, Unrelated)

        assert len(distribution(topics_locator).subscribers) == 2

    def test_misdeclared_methods_are_reported(
        self,
        topics_locator: ServiceLocator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="provisor"):
            register(topics_locator, Misdeclared)

        assert [subscriber.name for subscriber in distribution(topics_locator).subscribers] == ["returns"]
        assert "Two message parameters in method two_messages of service Misdeclared" in caplog.text
        assert "Unsupported parameter 'missing' at index 1 in method unsupported" in caplog.text
        assert "values returned from subscriber methods are ignored" in caplog.text
        assert "not_a_subscriber" not in caplog.text

    def test_parameter_outside_permitted_types_is_reported(
        self,
        topics_locator: ServiceLocator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="provisor"):
            register(topics_locator, CancelledOutsidePermitted)

        assert "outside the permitted types" in caplog.text

    def test_provided_receiver(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, ReceiverFactory)

        Topic(topics_locator, Event).publish(Event("a"))

        assert RECEIVED == [("provided", "a")]


class TestDistribution:
    def test_message_type_selects_subscribers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, Orders)

        Topic(topics_locator, OrderPlaced).publish(OrderPlaced("placed"))

        assert sorted(RECEIVED) == [("on_event", "placed"), ("on_placed", "placed")]

        RECEIVED.clear()
        Topic(topics_locator, Event).publish(OrderPlaced("as_event"))

        assert sorted(RECEIVED) == [("on_event", "as_event"), ("on_placed", "as_event")]

        RECEIVED.clear()
        Topic(topics_locator, Event).publish(Event("plain"))

        assert RECEIVED == [("on_event", "plain")]

    def test_untyped_topic_reaches_typed_subscribers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, NumberReceiver)

        Topic(topics_locator, object).publish(3)
        Topic(topics_locator).publish("three")
        topics_locator.get_service(Topic).publish(4.5)

        assert RECEIVED == [("number", "3"), ("number", "4.5")]

    def test_message_without_subscribers_is_logged(
        self,
        topics_locator: ServiceLocator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        register(topics_locator, Orders)

        with caplog.at_level(logging.WARNING, logger="provisor"):
            Topic(topics_locator, str).publish("nobody listens")

        assert RECEIVED == []
        assert "has no subscribers" in caplog.text

    def test_qualifiers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, QualifiedReceiver)
        topic = Topic(topics_locator, Event)

        topic.publish(Event("plain"))
        topic.named("urgent").publish(Event("urgent"))
        topic.qualified_with(Audit()).publish(Event("audit"))

        assert sorted(RECEIVED) == [
            ("on_any", "audit"),
            ("on_any", "plain"),
            ("on_any", "urgent"),
            ("on_not_named", "audit"),
            ("on_not_named", "plain"),
            ("on_unqualified", "plain"),
            ("on_urgent", "urgent"),
        ]

    def test_permitted_types(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, PlacedOnly)

        Topic(topics_locator, OrderPlaced).publish(OrderPlaced("placed"))
        Topic(topics_locator, OrderCancelled).publish(OrderCancelled("cancelled"))
        Topic(topics_locator, Event).publish(Event("event"))

        assert RECEIVED == [("placed_only", "placed")]

    def test_per_lookup_receiver_is_disposed_after_each_delivery(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, PerLookupReceiver)
        topic = Topic(topics_locator, Event)

        topic.publish(Event("a"))
        topic.publish(Event("b"))

        assert RECEIVED == [
            ("created", "per_lookup"),
            ("received", "a"),
            ("destroyed", "per_lookup"),
            ("created", "per_lookup"),
            ("received", "b"),
            ("destroyed", "per_lookup"),
        ]

    def test_singleton_receiver_is_reused(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, SingletonReceiver)
        topic = Topic(topics_locator, Event)

        topic.publish(Event("a"))
        topic.publish(Event("b"))
        topics_locator.shutdown()

        assert RECEIVED == [
            ("created", "singleton"),
            ("received", "a"),
            ("received", "b"),
            ("destroyed", "singleton"),
        ]

    def test_failing_subscriber_does_not_stop_delivery(
        self,
        topics_locator: ServiceLocator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        register(topics_locator, FailingReceiver, Orders)

        with caplog.at_level(logging.ERROR, logger="provisor"):
            Topic(topics_locator, OrderPlaced).publish(OrderPlaced("placed"))

        assert sorted(RECEIVED) == [("on_event", "placed"), ("on_placed", "placed")]
        assert "Error distributing message" in caplog.text
        assert "FailingReceiver.on_event" in caplog.text

    def test_receiver_provided_as_none_is_reported(
        self,
        topics_locator: ServiceLocator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        register(topics_locator, NullReceiverFactory)

        with caplog.at_level(logging.ERROR, logger="provisor"):
            Topic(topics_locator, Event).publish(Event("a"))

        assert RECEIVED == []
        assert "NullReceiver.on_event is an instance method, but its service resolved to None" in caplog.text

    def test_static_subscribers(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, StaticReceiver)

        Topic(topics_locator, OrderPlaced).publish(OrderPlaced("placed"))

        assert sorted(RECEIVED) == [("StaticReceiver", "placed"), ("static", "placed")]

    def test_other_parameters_are_injected_and_released(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, Clock, WithServices)

        Topic(topics_locator, Event).publish(Event("a"))

        assert RECEIVED == [("now", "a"), ("clock", "closed")]

    def test_injected_topic_publishes(self, topics_locator: ServiceLocator) -> None:
        register(topics_locator, QualifiedReceiver, UrgentPublisher)

        topics_locator.get_service(UrgentPublisher).events.publish(OrderPlaced("from_publisher"))

        assert sorted(RECEIVED) == [("on_any", "from_publisher"), ("on_urgent", "from_publisher")]
