from provisor.descriptors import ClassDescriptor, ConstantDescriptor, Descriptor
from provisor.exceptions import (
    DisposeMethodNotFoundError,
    InvalidRegistrationError,
    LocatorShutdownError,
    MultiError,
    ProvisorError,
    ServiceNotFoundError,
    UnsatisfiedDependencyError,
)
from provisor.injection import Injectee
from provisor.locator import (
    Binder,
    ConfigurationListener,
    DynamicConfiguration,
    DynamicConfigurationService,
    ServiceHandle,
    ServiceLocator,
)
from provisor.markers import (
    DisposalHandledBy,
    MessageReceiver,
    Named,
    Provides,
    Qualifier,
    Rank,
    SelfDescriptor,
    SubscribeTo,
    Unqualified,
    contract,
    contracts_provided,
    message_receiver,
    per_lookup,
    provides,
    qualified,
    rank,
    singleton,
)
from provisor.provides_enabler import ProvidesAnnotationEnabler, ProvidesModule
from provisor.scope import Scope
from provisor.services import Services
from provisor.topics import Topic, TopicDistributionService, TopicsModule

__all__ = [
    "Binder",
    "ClassDescriptor",
    "ConfigurationListener",
    "ConstantDescriptor",
    "Descriptor",
    "DisposalHandledBy",
    "DisposeMethodNotFoundError",
    "DynamicConfiguration",
    "DynamicConfigurationService",
    "Injectee",
    "InvalidRegistrationError",
    "LocatorShutdownError",
    "MessageReceiver",
    "MultiError",
    "Named",
    "Provides",
    "ProvidesAnnotationEnabler",
    "ProvidesModule",
    "ProvisorError",
    "Qualifier",
    "Rank",
    "Scope",
    "SelfDescriptor",
    "ServiceHandle",
    "ServiceLocator",
    "ServiceNotFoundError",
    "Services",
    "SubscribeTo",
    "Topic",
    "TopicDistributionService",
    "TopicsModule",
    "UnsatisfiedDependencyError",
    "Unqualified",
    "contract",
    "contracts_provided",
    "message_receiver",
    "per_lookup",
    "provides",
    "qualified",
    "rank",
    "singleton",
]
