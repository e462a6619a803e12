"""ONVIF device client: lazy service sessions and PullPoint event subscriptions."""

from ronin_onvif.config import Settings, get_settings
from ronin_onvif.services import (
    Credential,
    DeviceSession,
    EndReason,
    NotificationBatch,
    ServiceKind,
    TopicFilter,
    TopicTree,
    create_subscription,
    run_subscription,
)

__version__ = "0.1.0"

__all__ = [
    "Credential",
    "DeviceSession",
    "EndReason",
    "NotificationBatch",
    "ServiceKind",
    "Settings",
    "TopicFilter",
    "TopicTree",
    "create_subscription",
    "get_settings",
    "run_subscription",
]
