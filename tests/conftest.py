"""Pytest configuration and fixtures."""

import asyncio
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from lxml import etree

from ronin_onvif.config import Settings
from ronin_onvif.services.descriptors import (
    SERVICE_DEFINITIONS,
    ServiceDescriptor,
    ServiceDescriptorCache,
    ServiceKind,
)
from ronin_onvif.services.device import DeviceSession
from ronin_onvif.services.transport import Credential, OperationRequest

TT_NS = "http://www.onvif.org/ver10/schema"
DEVICE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@dataclass
class RecordedCall:
    """One request seen by ScriptedTransport."""

    address: str
    operation: str
    params: dict
    binding: Optional[str]
    credential: Optional[Credential]


class ScriptedTransport:
    """In-memory TransportClient replaying scripted responses per operation.

    Scripted results are consumed in order; exception instances are raised.
    Once an operation's script is exhausted its default is returned.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self.closed = False
        self.delay = 0.0
        self._scripts: dict[str, deque] = defaultdict(deque)
        self._defaults: dict[str, Any] = {}

    def script(self, operation: str, *results: Any) -> None:
        self._scripts[operation].extend(results)

    def default(self, operation: str, result: Any) -> None:
        self._defaults[operation] = result

    def calls_to(self, operation: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.operation == operation]

    async def invoke(
        self,
        address: str,
        request: OperationRequest,
        credential: Optional[Credential],
    ) -> Any:
        self.calls.append(
            RecordedCall(
                address, request.operation, dict(request.params), request.binding, credential
            )
        )
        await asyncio.sleep(self.delay)
        queue = self._scripts.get(request.operation)
        result = queue.popleft() if queue else self._defaults.get(request.operation)
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


def make_descriptor(kind: ServiceKind) -> ServiceDescriptor:
    """Build a descriptor without parsing any WSDL."""
    definition = SERVICE_DEFINITIONS[kind]
    return ServiceDescriptor(
        kind=kind,
        namespace=definition["ns"],
        binding_name=definition["binding"],
        wsdl_file=definition["wsdl"],
        extra_bindings=definition.get("extra_bindings", ()),
    )


class CountingFactory:
    """Descriptor factory recording how often each kind is built."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.built: list[ServiceKind] = []
        self._lock = threading.Lock()

    def __call__(self, kind: ServiceKind) -> ServiceDescriptor:
        if self.delay:
            threading.Event().wait(self.delay)
        with self._lock:
            self.built.append(kind)
        return make_descriptor(kind)

    def count(self, kind: ServiceKind) -> int:
        return self.built.count(kind)


def capabilities_response(**overrides: Any) -> dict:
    """GetCapabilities response advertising device, media and events."""
    response = {
        "Analytics": None,
        "Device": {"XAddr": "http://192.168.1.100/onvif/device_service"},
        "Events": {"XAddr": "http://192.168.1.100/onvif/events"},
        "Imaging": None,
        "Media": {"XAddr": "http://192.168.1.100/onvif/media"},
        "PTZ": None,
    }
    response.update(overrides)
    return response


def make_message_element(
    data: tuple[tuple[str, str], ...] = (),
    source: tuple[tuple[str, str], ...] = (),
    operation: Optional[str] = "Changed",
    utc_time: Optional[str] = "2024-05-01T12:00:00Z",
) -> etree._Element:
    """Build a raw tt:Message element, as left undecoded by some WSDLs."""
    message = etree.Element(f"{{{TT_NS}}}Message", nsmap={"tt": TT_NS})
    if utc_time is not None:
        message.set("UtcTime", utc_time)
    if operation is not None:
        message.set("PropertyOperation", operation)
    for section, items in (("Source", source), ("Data", data)):
        parent = etree.SubElement(message, f"{{{TT_NS}}}{section}")
        for name, value in items:
            etree.SubElement(parent, f"{{{TT_NS}}}SimpleItem", Name=name, Value=value)
    return message


def _item_list(items: tuple[tuple[str, str], ...]) -> Optional[dict]:
    if not items:
        return None
    return {"SimpleItem": [{"Name": name, "Value": value} for name, value in items]}


def make_notification(
    topic: str,
    data: tuple[tuple[str, str], ...] = (),
    source: tuple[tuple[str, str], ...] = (),
    operation: Optional[str] = "Changed",
    utc_time: Optional[str] = "2024-05-01T12:00:00Z",
) -> dict:
    """Build a wsnt:NotificationMessage the way zeep decodes it."""
    message = {
        "Source": _item_list(source),
        "Key": None,
        "Data": _item_list(data),
        "Extension": None,
        "UtcTime": (
            datetime.fromisoformat(utc_time.replace("Z", "+00:00"))
            if utc_time is not None
            else None
        ),
        "PropertyOperation": operation,
    }
    return {
        "SubscriptionReference": None,
        "Topic": {
            "_value_1": topic,
            "Dialect": "http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet",
        },
        "ProducerReference": None,
        "Message": {"_value_1": message},
    }


def pull_response(*notifications: dict, current_time: datetime = DEVICE_TIME) -> dict:
    """Build a decoded PullMessagesResponse."""
    return {
        "CurrentTime": current_time,
        "TerminationTime": current_time + timedelta(minutes=1),
        "NotificationMessage": list(notifications),
    }


@pytest.fixture
def settings() -> Settings:
    """Settings with short delays and auto-renew disabled."""
    return Settings(
        pull_timeout=1.0,
        pull_retry_delay=0.01,
        pull_fault_retries=2,
        renew_margin=0,
    )


@pytest.fixture
def transport() -> ScriptedTransport:
    """Scripted transport answering GetCapabilities."""
    transport = ScriptedTransport()
    transport.default("GetCapabilities", capabilities_response())
    return transport


@pytest.fixture
def factory() -> CountingFactory:
    """Descriptor factory that never touches WSDL files."""
    return CountingFactory()


@pytest.fixture
def cache(factory: CountingFactory) -> ServiceDescriptorCache:
    """Descriptor cache backed by the counting factory."""
    return ServiceDescriptorCache(factory=factory)


@pytest.fixture
def credential() -> Credential:
    return Credential("admin", "secret")


@pytest.fixture
async def session(
    transport: ScriptedTransport,
    cache: ServiceDescriptorCache,
    settings: Settings,
    credential: Credential,
) -> DeviceSession:
    """Open session against the scripted transport."""
    return await DeviceSession.open(
        "192.168.1.100",
        credential,
        transport=transport,
        cache=cache,
        settings=settings,
    )
