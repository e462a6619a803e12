"""Request/response transport for ONVIF service calls.

Sessions and handles only depend on the ``TransportClient`` protocol.
``ZeepTransport`` is the default implementation: it builds SOAP envelopes
from a descriptor's parsed WSDL, attaches a WS-Security UsernameToken when
a credential is present and posts them with httpx.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx
from lxml import etree
from zeep.exceptions import Fault, TransportError as ZeepTransportError
from zeep.helpers import serialize_object
from zeep.wsse.username import UsernameToken

from ronin_onvif.config import Settings, get_settings
from ronin_onvif.exceptions import ConnectionRefused, ProtocolFault, TransportTimeout
from ronin_onvif.services.descriptors import ServiceDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Username/password attached to every call of a session."""

    username: str
    password: str = field(repr=False)

    @classmethod
    def from_parts(
        cls, username: Optional[str], password: Optional[str]
    ) -> Optional["Credential"]:
        """Build a credential, or None for anonymous access.

        Both parts must be non-empty; a username without a password means
        unauthenticated calls.
        """
        if not username or not password:
            return None
        return cls(username, password)


@dataclass(frozen=True)
class OperationRequest:
    """One operation call on a service binding."""

    descriptor: ServiceDescriptor
    operation: str
    params: Mapping[str, Any] = field(default_factory=dict)
    binding: Optional[str] = None


class TransportClient(Protocol):
    """Performs a single request/response exchange against an endpoint."""

    async def invoke(
        self,
        address: str,
        request: OperationRequest,
        credential: Optional[Credential],
    ) -> Any:
        """Send ``request`` to ``address``.

        Raises:
            TransportTimeout: No answer within the timeout
            ConnectionRefused: The endpoint could not be reached
            ProtocolFault: The device answered with a SOAP fault
        """
        ...

    async def aclose(self) -> None:
        ...


def _http_headers(descriptor: ServiceDescriptor, soap_action: Optional[str]) -> dict[str, str]:
    action = soap_action or ""
    if descriptor.soap_version == "1.2":
        return {"Content-Type": f'application/soap+xml; charset=utf-8; action="{action}"'}
    return {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{action}"'}


class ZeepTransport:
    """SOAP transport built on zeep envelopes and an async httpx client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self._settings.receive_timeout,
                connect=self._settings.connect_timeout,
            )
        )

    async def invoke(
        self,
        address: str,
        request: OperationRequest,
        credential: Optional[Credential],
    ) -> Any:
        descriptor = request.descriptor
        if descriptor.wsdl is None:
            raise ValueError(f"{descriptor.kind.value} descriptor has no parsed WSDL")

        wsdl_client = descriptor.wsdl
        binding_name = descriptor.binding_qname(request.binding)
        service = wsdl_client.create_service(binding_name, address)
        # WS-Addressing headers (wsa:To) must name the target, not the WSDL's address
        envelope, _ = service._binding._create(
            request.operation,
            (),
            dict(request.params),
            client=wsdl_client,
            options={"address": address},
        )
        if credential is not None:
            envelope, _ = UsernameToken(
                credential.username, credential.password, use_digest=True
            ).apply(envelope, {})

        binding = wsdl_client.wsdl.bindings[binding_name]
        operation = binding.get(request.operation)
        body = etree.tostring(envelope, encoding="utf-8", xml_declaration=True)
        if descriptor.log_messages:
            logger.debug(f"SOAP request to {address}:\n{body.decode('utf-8')}")

        try:
            response = await self._client.post(
                address,
                content=body,
                headers=_http_headers(descriptor, operation.soapaction),
                timeout=httpx.Timeout(
                    descriptor.receive_timeout, connect=descriptor.connect_timeout
                ),
            )
        except httpx.TimeoutException as e:
            raise TransportTimeout(
                f"{request.operation} timed out: {address}", address=address
            ) from e
        except httpx.TransportError as e:
            raise ConnectionRefused(
                f"{request.operation} failed to connect to {address}: {e}",
                address=address,
            ) from e

        if descriptor.log_messages:
            logger.debug(f"SOAP response from {address}:\n{response.text}")

        try:
            result = binding.process_reply(wsdl_client, operation, response)
        except Fault as fault:
            raise ProtocolFault(
                fault.code,
                fault.message,
                subcodes=[str(code) for code in (fault.subcodes or ())],
                address=address,
            ) from fault
        except ZeepTransportError as e:
            raise ProtocolFault(
                f"HTTP {e.status_code}", e.message, address=address
            ) from e

        return serialize_object(result)

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
