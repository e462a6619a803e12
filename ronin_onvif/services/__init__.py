"""ONVIF device sessions, service bindings and event subscriptions."""

from ronin_onvif.services.descriptors import (
    ServiceDescriptor,
    ServiceDescriptorCache,
    ServiceKind,
    get_default_cache,
)
from ronin_onvif.services.device import Capabilities, DeviceSession, normalize_base_url
from ronin_onvif.services.event_subscriber import (
    EndReason,
    FunctionCallbacks,
    NotificationBatch,
    NotificationMessage,
    PropertyOperation,
    PullPointSubscriber,
    Subscription,
    SubscriptionCallbacks,
    SubscriptionState,
    create_subscription,
    is_digital_input_change,
    run_subscription,
)
from ronin_onvif.services.handles import (
    DeviceService,
    EventsService,
    ImagingService,
    MediaService,
    PTZService,
    ServiceHandle,
)
from ronin_onvif.services.topics import TopicFilter, TopicTree, topic_matches, walk_topics
from ronin_onvif.services.transport import Credential, TransportClient, ZeepTransport

__all__ = [
    "Capabilities",
    "Credential",
    "DeviceService",
    "DeviceSession",
    "EndReason",
    "EventsService",
    "FunctionCallbacks",
    "ImagingService",
    "MediaService",
    "NotificationBatch",
    "NotificationMessage",
    "PTZService",
    "PropertyOperation",
    "PullPointSubscriber",
    "ServiceDescriptor",
    "ServiceDescriptorCache",
    "ServiceHandle",
    "ServiceKind",
    "Subscription",
    "SubscriptionCallbacks",
    "SubscriptionState",
    "TopicFilter",
    "TopicTree",
    "TransportClient",
    "ZeepTransport",
    "create_subscription",
    "get_default_cache",
    "is_digital_input_change",
    "normalize_base_url",
    "run_subscription",
    "topic_matches",
    "walk_topics",
]
