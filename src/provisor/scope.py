from enum import Enum


class Scope(str, Enum):
    """Defines how instances of a service are shared by the service locator."""

    PER_LOOKUP = "per_lookup"
    """A new instance is created for every lookup.

    Instances are disposed only when the ``ServiceHandle`` that created them
    is closed. Instances obtained without a handle are never disposed.
    """

    SINGLETON = "singleton"
    """A single instance is created and shared for the lifetime of the locator.

    The instance is disposed when the locator shuts down.
    """
