"""Shared pytest fixtures for provisor tests."""

from collections.abc import Iterator

import pytest

from provisor.locator import ServiceLocator
from provisor.provides_enabler import ProvidesModule
from provisor.services import Services
from provisor.topics import TopicsModule


@pytest.fixture()
def locator() -> Iterator[ServiceLocator]:
    """Bare locator without any extension installed."""
    locator = ServiceLocator(name="test")
    yield locator
    if not locator.is_shutdown:
        locator.shutdown()


@pytest.fixture()
def provides_locator(locator: ServiceLocator) -> ServiceLocator:
    """Locator with provider-member discovery installed."""
    configuration = locator.create_dynamic_configuration()
    configuration.bind(ProvidesModule())
    configuration.commit()
    return locator


@pytest.fixture()
def topics_locator(provides_locator: ServiceLocator) -> ServiceLocator:
    """Locator with provider-member discovery and topic distribution installed."""
    configuration = provides_locator.create_dynamic_configuration()
    configuration.bind(TopicsModule())
    configuration.commit()
    return provides_locator


@pytest.fixture()
def services() -> Iterator[Services]:
    """Services facade with every extension installed and nothing else registered."""
    services = Services(name="test")
    yield services
    if not services.locator.is_shutdown:
        services.shutdown()
