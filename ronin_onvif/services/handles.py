"""Per-session service handles.

A handle is a shared ServiceDescriptor bound to one device's endpoint
address and credential. Each ServiceKind has its own handle class carrying
that service's operations; ``bind_service`` picks the class.
"""

import logging
from datetime import timedelta
from typing import Any, ClassVar, Optional

from ronin_onvif.services.descriptors import ServiceDescriptor, ServiceKind
from ronin_onvif.services.topics import TopicFilter
from ronin_onvif.services.transport import Credential, OperationRequest, TransportClient

logger = logging.getLogger(__name__)


class ServiceHandle:
    """Base class for services bound to a device endpoint."""

    kind: ClassVar[ServiceKind]

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        address: str,
        transport: TransportClient,
        credential: Optional[Credential] = None,
    ):
        if descriptor.kind is not self.kind:
            raise ValueError(
                f"{type(self).__name__} cannot bind a {descriptor.kind.value} descriptor"
            )
        self.descriptor = descriptor
        self.address = address
        self.credential = credential
        self._transport = transport

    async def call(
        self,
        operation: str,
        *,
        binding: Optional[str] = None,
        address: Optional[str] = None,
        **params: Any,
    ) -> Any:
        """Invoke ``operation`` on this service.

        Args:
            operation: WSDL operation name (e.g. "GetProfiles")
            binding: Alternate binding of the same WSDL
            address: Endpoint override (e.g. a subscription address)
            **params: Operation parameters
        """
        target = address or self.address
        credential = self.credential if self.descriptor.attach_credentials else None
        request = OperationRequest(self.descriptor, operation, params, binding)
        logger.debug(f"{self.kind.value}.{operation} -> {target}")
        return await self._transport.invoke(target, request, credential)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(address={self.address!r})"


class DeviceService(ServiceHandle):
    """Device management service (always present)."""

    kind = ServiceKind.DEVICE

    async def get_capabilities(self, categories: tuple[str, ...] = ("All",)) -> Any:
        return await self.call("GetCapabilities", Category=list(categories))

    async def get_device_information(self) -> Any:
        return await self.call("GetDeviceInformation")

    async def get_hostname(self) -> Any:
        return await self.call("GetHostname")

    async def get_system_date_and_time(self) -> Any:
        return await self.call("GetSystemDateAndTime")

    async def set_system_date_and_time(
        self,
        date_time_type: str,
        daylight_savings: bool,
        time_zone: Optional[str] = None,
        utc_datetime: Optional[dict] = None,
    ) -> Any:
        params: dict[str, Any] = {
            "DateTimeType": date_time_type,
            "DaylightSavings": daylight_savings,
        }
        if time_zone is not None:
            params["TimeZone"] = {"TZ": time_zone}
        if utc_datetime is not None:
            params["UTCDateTime"] = utc_datetime
        return await self.call("SetSystemDateAndTime", **params)

    async def system_reboot(self) -> Any:
        return await self.call("SystemReboot")


class MediaService(ServiceHandle):
    """Media service: profiles and stream/snapshot URIs."""

    kind = ServiceKind.MEDIA

    async def get_profiles(self) -> Any:
        return await self.call("GetProfiles")

    async def get_stream_uri(
        self, profile_token: str, protocol: str = "RTSP", stream: str = "RTP-Unicast"
    ) -> Any:
        return await self.call(
            "GetStreamUri",
            StreamSetup={"Stream": stream, "Transport": {"Protocol": protocol}},
            ProfileToken=profile_token,
        )

    async def get_snapshot_uri(self, profile_token: str) -> Any:
        return await self.call("GetSnapshotUri", ProfileToken=profile_token)


class PTZService(ServiceHandle):
    """Pan/tilt/zoom service."""

    kind = ServiceKind.PTZ

    async def get_nodes(self) -> Any:
        return await self.call("GetNodes")

    async def get_status(self, profile_token: str) -> Any:
        return await self.call("GetStatus", ProfileToken=profile_token)

    async def continuous_move(
        self,
        profile_token: str,
        velocity: dict,
        timeout: Optional[timedelta] = None,
    ) -> Any:
        params: dict[str, Any] = {"ProfileToken": profile_token, "Velocity": velocity}
        if timeout is not None:
            params["Timeout"] = timeout
        return await self.call("ContinuousMove", **params)

    async def stop(
        self, profile_token: str, pan_tilt: bool = True, zoom: bool = True
    ) -> Any:
        return await self.call(
            "Stop", ProfileToken=profile_token, PanTilt=pan_tilt, Zoom=zoom
        )


class ImagingService(ServiceHandle):
    """Imaging service (exposure, focus, ...)."""

    kind = ServiceKind.IMAGING

    async def get_imaging_settings(self, video_source_token: str) -> Any:
        return await self.call("GetImagingSettings", VideoSourceToken=video_source_token)

    async def get_status(self, video_source_token: str) -> Any:
        return await self.call("GetStatus", VideoSourceToken=video_source_token)


class EventsService(ServiceHandle):
    """Events service and the PullPoint subscriptions created through it.

    Subscription-level operations take the subscription address returned by
    CreatePullPointSubscription, which may differ from the Events XAddr.
    """

    kind = ServiceKind.EVENTS

    async def get_service_capabilities(self) -> Any:
        return await self.call("GetServiceCapabilities")

    async def get_event_properties(self) -> Any:
        return await self.call("GetEventProperties")

    async def create_pull_point_subscription(
        self,
        topic_filter: Optional[TopicFilter],
        initial_termination_time: str,
    ) -> Any:
        params: dict[str, Any] = {"InitialTerminationTime": initial_termination_time}
        if topic_filter is not None and topic_filter.expressions:
            params["Filter"] = {"_value_1": [topic_filter.to_element()]}
        return await self.call("CreatePullPointSubscription", **params)

    async def pull_messages(
        self, subscription_address: str, timeout: timedelta, message_limit: int
    ) -> Any:
        return await self.call(
            "PullMessages",
            binding="PullPointSubscriptionBinding",
            address=subscription_address,
            Timeout=timeout,
            MessageLimit=message_limit,
        )

    async def renew(self, subscription_address: str, termination_time: str) -> Any:
        return await self.call(
            "Renew",
            binding="SubscriptionManagerBinding",
            address=subscription_address,
            TerminationTime=termination_time,
        )

    async def unsubscribe(self, subscription_address: str) -> Any:
        return await self.call(
            "Unsubscribe",
            binding="SubscriptionManagerBinding",
            address=subscription_address,
        )


HANDLE_TYPES: dict[ServiceKind, type[ServiceHandle]] = {
    ServiceKind.DEVICE: DeviceService,
    ServiceKind.MEDIA: MediaService,
    ServiceKind.PTZ: PTZService,
    ServiceKind.IMAGING: ImagingService,
    ServiceKind.EVENTS: EventsService,
}


def bind_service(
    descriptor: ServiceDescriptor,
    address: str,
    transport: TransportClient,
    credential: Optional[Credential] = None,
) -> ServiceHandle:
    """Bind a shared descriptor to one device endpoint."""
    return HANDLE_TYPES[descriptor.kind](descriptor, address, transport, credential)
