"""Process-wide cache of ONVIF service binding metadata.

Parsing a WSDL and building its binding configuration is the expensive part
of talking to a new ONVIF service. The result depends only on the kind of
service, never on the device, so a single descriptor per kind is shared by
every DeviceSession. Descriptors must never carry an address or credential;
those are bound per session (see ``handles.bind_service``).
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Optional

from zeep import Client, Settings as ZeepSettings, Transport

from ronin_onvif.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ServiceKind(str, Enum):
    """Capability-bound ONVIF services."""

    DEVICE = "device"
    MEDIA = "media"
    PTZ = "ptz"
    IMAGING = "imaging"
    EVENTS = "events"


SERVICE_DEFINITIONS: dict[ServiceKind, dict[str, Any]] = {
    ServiceKind.DEVICE: {
        "ns": "http://www.onvif.org/ver10/device/wsdl",
        "wsdl": "devicemgmt.wsdl",
        "binding": "DeviceBinding",
    },
    ServiceKind.MEDIA: {
        "ns": "http://www.onvif.org/ver10/media/wsdl",
        "wsdl": "media.wsdl",
        "binding": "MediaBinding",
    },
    ServiceKind.PTZ: {
        "ns": "http://www.onvif.org/ver20/ptz/wsdl",
        "wsdl": "ptz.wsdl",
        "binding": "PTZBinding",
    },
    ServiceKind.IMAGING: {
        "ns": "http://www.onvif.org/ver20/imaging/wsdl",
        "wsdl": "imaging.wsdl",
        "binding": "ImagingBinding",
    },
    ServiceKind.EVENTS: {
        "ns": "http://www.onvif.org/ver10/events/wsdl",
        "wsdl": "events.wsdl",
        "binding": "EventBinding",
        # Pulls go to the subscription address, not the Events XAddr
        "extra_bindings": (
            "PullPointSubscriptionBinding",
            "SubscriptionManagerBinding",
        ),
    },
}


@dataclass(frozen=True)
class ServiceDescriptor:
    """Address-independent binding configuration for one service kind."""

    kind: ServiceKind
    namespace: str
    binding_name: str
    wsdl_file: str
    soap_version: str = "1.2"
    log_messages: bool = False
    attach_credentials: bool = True
    connect_timeout: float = 36.0
    receive_timeout: float = 32.0
    extra_bindings: tuple[str, ...] = ()
    # Parsed WSDL (zeep Client without address or wsse); None in tests
    wsdl: Any = field(default=None, compare=False, repr=False)

    def binding_qname(self, binding: Optional[str] = None) -> str:
        """Qualified binding name, e.g. ``{ns}DeviceBinding``."""
        name = binding or self.binding_name
        if name != self.binding_name and name not in self.extra_bindings:
            raise ValueError(f"{self.kind.value} service has no binding {name}")
        return f"{{{self.namespace}}}{name}"


DescriptorFactory = Callable[[ServiceKind], ServiceDescriptor]


def resolve_wsdl_dir(settings: Settings) -> Path:
    """Directory holding the ONVIF WSDL files."""
    if settings.wsdl_dir:
        return Path(settings.wsdl_dir)

    import onvif

    # WSDL files are in the onvif package's wsdl subdirectory
    return Path(onvif.__file__).parent / "wsdl"


def load_descriptor(
    kind: ServiceKind, settings: Optional[Settings] = None
) -> ServiceDescriptor:
    """Parse the WSDL for ``kind`` and build its descriptor.

    This is the slow path that ``ServiceDescriptorCache`` runs once per kind.
    """
    settings = settings or get_settings()
    definition = SERVICE_DEFINITIONS[kind]
    wsdl_path = resolve_wsdl_dir(settings) / definition["wsdl"]
    if not wsdl_path.is_file():
        raise FileNotFoundError(f"WSDL for {kind.value} service not found: {wsdl_path}")

    logger.debug(f"Parsing {wsdl_path.name} for {kind.value} service")
    client = Client(
        str(wsdl_path),
        transport=Transport(),
        settings=ZeepSettings(strict=False, xml_huge_tree=True),
    )

    return ServiceDescriptor(
        kind=kind,
        namespace=definition["ns"],
        binding_name=definition["binding"],
        wsdl_file=definition["wsdl"],
        log_messages=settings.log_soap_messages,
        connect_timeout=settings.connect_timeout,
        receive_timeout=settings.receive_timeout,
        extra_bindings=definition.get("extra_bindings", ()),
        wsdl=client,
    )


class ServiceDescriptorCache:
    """Build-once cache of ServiceDescriptors keyed by ServiceKind.

    Safe to share between threads and event loops. Each kind has its own
    construction lock, so concurrent first use of one kind builds it exactly
    once (late callers get the winner's descriptor) while other kinds are
    not held up.

    Example usage:
        cache = ServiceDescriptorCache()
        descriptor = cache.get_or_create(ServiceKind.MEDIA)
        ...
        cache.clear()  # at shutdown
    """

    def __init__(
        self,
        factory: Optional[DescriptorFactory] = None,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings
        self._factory = factory or self._load
        self._descriptors: dict[ServiceKind, ServiceDescriptor] = {}
        self._kind_locks: dict[ServiceKind, threading.Lock] = {}
        self._lock = threading.Lock()

    def _load(self, kind: ServiceKind) -> ServiceDescriptor:
        return load_descriptor(kind, self._settings)

    def get_or_create(self, kind: ServiceKind) -> ServiceDescriptor:
        """Return the descriptor for ``kind``, building it on first use."""
        kind = ServiceKind(kind)
        descriptor = self._descriptors.get(kind)
        if descriptor is not None:
            logger.debug(f"Reusing cached {kind.value} service descriptor")
            return descriptor

        with self._lock:
            kind_lock = self._kind_locks.setdefault(kind, threading.Lock())

        with kind_lock:
            descriptor = self._descriptors.get(kind)
            if descriptor is not None:
                return descriptor

            logger.debug(f"First use of {kind.value} service - building descriptor")
            descriptor = self._factory(kind)
            if descriptor.kind is not kind:
                raise ValueError(
                    f"Factory built a {descriptor.kind.value} descriptor for {kind.value}"
                )
            with self._lock:
                self._descriptors[kind] = descriptor
            return descriptor

    def clear(self) -> None:
        """Evict all descriptors. Call when the application shuts down."""
        with self._lock:
            count = len(self._descriptors)
            self._descriptors.clear()
            self._kind_locks.clear()
        logger.info(f"Cleared service descriptor cache, released {count} entries")

    def size(self) -> int:
        """Number of cached descriptors (introspection only)."""
        return len(self._descriptors)

    def contains(self, kind: ServiceKind) -> bool:
        """Whether ``kind`` is cached (introspection only)."""
        return ServiceKind(kind) in self._descriptors


@lru_cache
def get_default_cache() -> ServiceDescriptorCache:
    """Get the process-wide descriptor cache."""
    return ServiceDescriptorCache()
