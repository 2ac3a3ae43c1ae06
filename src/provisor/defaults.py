from provisor.scope import Scope

DEFAULT_SCOPE = Scope.PER_LOOKUP
"""Scope of classes registered without a scope marker."""

DEFAULT_RANKING = 0
"""Ranking of descriptors that carry no ``@rank`` marker."""

ENABLER_RANKING = 1
"""Ranking that lets the provides enabler replace the default configuration service."""

DEFAULT_LOCATOR_NAME = "default"
"""Name given to a ``ServiceLocator`` created without an explicit name."""
