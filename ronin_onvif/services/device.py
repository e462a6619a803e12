"""ONVIF device sessions.

A DeviceSession discovers a device's capabilities once and binds the other
services lazily, on first use, from the shared ServiceDescriptorCache.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

from ronin_onvif.config import Settings, get_settings
from ronin_onvif.exceptions import (
    CapabilitiesMissing,
    ServiceUnavailable,
    TransportError,
    Unreachable,
)
from ronin_onvif.schemas.onvif import DeviceInfo, MediaProfile
from ronin_onvif.services.descriptors import (
    ServiceDescriptorCache,
    ServiceKind,
    get_default_cache,
)
from ronin_onvif.services.handles import (
    DeviceService,
    EventsService,
    ImagingService,
    MediaService,
    PTZService,
    ServiceHandle,
    bind_service,
)
from ronin_onvif.services.transport import Credential, TransportClient, ZeepTransport
from ronin_onvif.utils import format_gmt_offset, get_field, get_text, utc_now

logger = logging.getLogger(__name__)

# GetCapabilities section for each service kind
_CAPABILITY_SECTIONS = {
    ServiceKind.DEVICE: "Device",
    ServiceKind.MEDIA: "Media",
    ServiceKind.PTZ: "PTZ",
    ServiceKind.IMAGING: "Imaging",
    ServiceKind.EVENTS: "Events",
}


def normalize_base_url(url: str) -> str:
    """Reduce a device URL to ``scheme://host[:port]``.

    Accepts ``host``, ``host:port`` or a full URL with any path; http is
    assumed when no scheme is given and user info is dropped.
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("Device URL is empty")
    if "://" not in url:
        url = f"http://{url}"

    parts = urlsplit(url)
    host = parts.hostname
    if not host:
        raise ValueError(f"Device URL has no host: {url}")
    if ":" in host:
        host = f"[{host}]"
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme.lower()}://{host}{port}"


@dataclass(frozen=True)
class Capabilities:
    """Service addresses advertised by a device's GetCapabilities response."""

    addresses: Mapping[ServiceKind, str] = field(default_factory=dict)
    has_analytics: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "addresses", MappingProxyType(dict(self.addresses)))

    @classmethod
    def from_response(cls, response: Any) -> Optional["Capabilities"]:
        """Build from a GetCapabilities response.

        Returns None when the response carries no capability section at all.
        """
        caps = get_field(response, "Capabilities", response)
        if caps is None:
            return None

        sections = [get_field(caps, name) for name in _CAPABILITY_SECTIONS.values()]
        analytics = get_field(caps, "Analytics")
        if all(section is None for section in sections) and analytics is None:
            return None

        addresses = {}
        for kind, name in _CAPABILITY_SECTIONS.items():
            xaddr = get_field(get_field(caps, name), "XAddr")
            if xaddr and str(xaddr).strip():
                addresses[kind] = str(xaddr).strip()

        return cls(
            addresses=addresses,
            has_analytics=bool(get_field(analytics, "XAddr")),
        )

    def address_for(self, kind: ServiceKind) -> Optional[str]:
        return self.addresses.get(kind)

    def supports(self, kind: ServiceKind) -> bool:
        return kind in self.addresses


def _device_datetime(value: Any) -> Optional[datetime]:
    """Convert a tt:DateTime ({Date, Time}) into an aware UTC datetime."""
    date = get_field(value, "Date")
    clock = get_field(value, "Time")
    if date is None or clock is None:
        return None
    try:
        return datetime(
            int(get_field(date, "Year")),
            int(get_field(date, "Month")),
            int(get_field(date, "Day")),
            int(get_field(clock, "Hour")),
            int(get_field(clock, "Minute")),
            int(get_field(clock, "Second")),
            tzinfo=timezone.utc,
        )
    except (TypeError, ValueError):
        return None


class DeviceSession:
    """Connection to one ONVIF device.

    Example usage:
        async with await DeviceSession.open("192.168.1.10", credential) as session:
            events = await session.events()
            ...

    Services other than the device service are bound on first use and then
    reused; a kind the device never advertised resolves to None without
    contacting the device.
    """

    def __init__(
        self,
        base_url: str,
        credential: Optional[Credential],
        device: DeviceService,
        capabilities: Capabilities,
        transport: TransportClient,
        cache: ServiceDescriptorCache,
        owns_transport: bool = False,
    ):
        self.base_url = base_url
        self.credential = credential
        self.capabilities = capabilities
        self._device = device
        self._transport = transport
        self._cache = cache
        self._owns_transport = owns_transport
        self._services: dict[ServiceKind, ServiceHandle] = {ServiceKind.DEVICE: device}
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        base_url: str,
        credential: Optional[Credential] = None,
        *,
        transport: Optional[TransportClient] = None,
        cache: Optional[ServiceDescriptorCache] = None,
        settings: Optional[Settings] = None,
    ) -> "DeviceSession":
        """Connect to a device and discover its capabilities.

        Raises:
            ValueError: ``base_url`` is empty or has no host
            Unreachable: The device did not answer GetCapabilities
            CapabilitiesMissing: The device answered with no capabilities
        """
        settings = settings or get_settings()
        base = normalize_base_url(base_url)
        cache = cache or get_default_cache()
        owns_transport = transport is None
        if transport is None:
            transport = ZeepTransport(settings)

        try:
            loop = asyncio.get_running_loop()
            descriptor = await loop.run_in_executor(
                None, cache.get_or_create, ServiceKind.DEVICE
            )
            device = DeviceService(
                descriptor, f"{base}{settings.device_service_path}", transport, credential
            )

            try:
                response = await device.get_capabilities()
            except TransportError as e:
                raise Unreachable(f"Failed to get capabilities from {base}: {e}") from e

            capabilities = Capabilities.from_response(response)
            if capabilities is None:
                raise CapabilitiesMissing(f"Device at {base} returned no capabilities")
        except BaseException:
            if owns_transport:
                await transport.aclose()
            raise

        logger.info(
            f"Connected to ONVIF device at {base} "
            f"(services: {', '.join(k.value for k in capabilities.addresses)})"
        )
        return cls(base, credential, device, capabilities, transport, cache, owns_transport)

    @property
    def device(self) -> DeviceService:
        return self._device

    async def get_service(self, kind: ServiceKind) -> Optional[ServiceHandle]:
        """Get the handle for ``kind``, binding it on first use.

        Returns:
            The bound handle, or None if the device never advertised it
        """
        kind = ServiceKind(kind)
        handle = self._services.get(kind)
        if handle is not None:
            return handle

        address = self.capabilities.address_for(kind)
        if address is None:
            return None

        async with self._lock:
            handle = self._services.get(kind)
            if handle is not None:
                return handle

            logger.debug(f"Binding {kind.value} service at {address}")
            loop = asyncio.get_running_loop()
            descriptor = await loop.run_in_executor(None, self._cache.get_or_create, kind)
            handle = bind_service(descriptor, address, self._transport, self.credential)
            self._services[kind] = handle
            return handle

    async def require_service(self, kind: ServiceKind) -> ServiceHandle:
        """Like ``get_service`` but raises ServiceUnavailable instead of None."""
        handle = await self.get_service(kind)
        if handle is None:
            raise ServiceUnavailable(ServiceKind(kind).value)
        return handle

    async def media(self) -> MediaService:
        return await self.require_service(ServiceKind.MEDIA)

    async def ptz(self) -> PTZService:
        return await self.require_service(ServiceKind.PTZ)

    async def imaging(self) -> ImagingService:
        return await self.require_service(ServiceKind.IMAGING)

    async def events(self) -> EventsService:
        return await self.require_service(ServiceKind.EVENTS)

    def is_service_initialized(self, kind: ServiceKind) -> bool:
        return ServiceKind(kind) in self._services

    @property
    def initialized_service_count(self) -> int:
        return len(self._services)

    async def get_device_info(self) -> DeviceInfo:
        response = await self._device.get_device_information()
        return DeviceInfo.from_response(response or {})

    async def get_hostname(self) -> Optional[str]:
        response = await self._device.get_hostname()
        return get_field(response, "Name")

    async def get_system_date_and_time(self) -> Any:
        return await self._device.get_system_date_and_time()

    async def get_device_time(self) -> Optional[datetime]:
        """Current device clock in UTC, if the device reports one."""
        response = await self._device.get_system_date_and_time()
        return _device_datetime(get_field(response, "UTCDateTime"))

    async def reset_system_date_and_time(self) -> None:
        """Set the device clock to this host's current UTC time and offset."""
        now = utc_now()
        local = now.astimezone()
        time_zone = format_gmt_offset(local.utcoffset())
        daylight_savings = time.localtime().tm_isdst > 0

        await self._device.set_system_date_and_time(
            "Manual",
            daylight_savings,
            time_zone=time_zone,
            utc_datetime={
                "Date": {"Year": now.year, "Month": now.month, "Day": now.day},
                "Time": {"Hour": now.hour, "Minute": now.minute, "Second": now.second},
            },
        )
        logger.info(f"Set clock of {self.base_url} to {now.isoformat()} ({time_zone})")

    async def reboot(self) -> Optional[str]:
        response = await self._device.system_reboot()
        message = get_text(get_field(response, "Message", response))
        logger.info(f"Reboot requested for {self.base_url}: {message}")
        return message

    async def get_profiles(self) -> list[MediaProfile]:
        media = await self.media()
        response = await media.get_profiles() or []
        profiles = []
        for profile in response:
            token = get_field(profile, "token")
            if not token:
                continue
            profiles.append(MediaProfile(token=token, name=get_field(profile, "Name") or token))
        return profiles

    async def _profile_token(self, profile: Union[int, str]) -> Optional[str]:
        if isinstance(profile, str):
            return profile
        profiles = await self.get_profiles()
        if profile < 0 or profile >= len(profiles):
            return None
        return profiles[profile].token

    async def get_stream_uri(self, profile: Union[int, str] = 0) -> Optional[str]:
        """RTSP stream URI for a profile given by index or token.

        Returns None when the index is past the last profile.
        """
        media = await self.media()
        token = await self._profile_token(profile)
        if token is None:
            return None
        response = await media.get_stream_uri(token)
        return get_field(response, "Uri")

    async def get_snapshot_uri(self, profile: Union[int, str] = 0) -> Optional[str]:
        """Snapshot URI for a profile given by index or token."""
        media = await self.media()
        token = await self._profile_token(profile)
        if token is None:
            return None
        response = await media.get_snapshot_uri(token)
        return get_field(response, "Uri")

    async def close(self) -> None:
        """Drop bound services and close the transport if this session owns it."""
        self._services = {ServiceKind.DEVICE: self._device}
        if self._owns_transport:
            await self._transport.aclose()
        logger.debug(f"Closed session for {self.base_url}")

    async def __aenter__(self) -> "DeviceSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"DeviceSession({self.base_url!r})"
