"""ONVIF PullPoint event subscriptions.

ONVIF events are received via PullPoint subscription, a polling-based
approach where we repeatedly ask the camera for pending notifications.
Each subscription is served by one background task:

    CREATED -> POLLING -> TERMINATING -> TERMINATED

Pulls are strictly sequential and the next pull is only issued once the
caller's ``on_batch`` has returned. Termination is cooperative: the stop
flag is checked between pulls, an in-flight pull is never aborted.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol, Union

from lxml import etree

from ronin_onvif.config import Settings, get_settings
from ronin_onvif.exceptions import (
    ProtocolFault,
    SubscriptionError,
    SubscriptionRejected,
    TransportError,
    Unreachable,
)
from ronin_onvif.services.handles import EventsService
from ronin_onvif.services.topics import TopicFilter, local_name
from ronin_onvif.utils import get_field, get_text, parse_duration, to_datetime, utc_now

logger = logging.getLogger(__name__)

# Fault codes/subcodes meaning the device no longer knows the subscription
_SUBSCRIPTION_GONE_MARKERS = (
    "resourceunknown",
    "nosuchsubscription",
    "unabletodestroysubscription",
)


class SubscriptionState(str, Enum):
    """Subscription worker state."""

    CREATED = "created"
    POLLING = "polling"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class EndReason(str, Enum):
    """Why a subscription worker stopped."""

    EXPIRED = "expired"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


class PropertyOperation(str, Enum):
    """Known values of tt:Message/@PropertyOperation.

    Devices may send other values; those are passed through as plain strings.
    """

    INITIALIZED = "Initialized"
    UPDATED = "Updated"
    DELETED = "Deleted"
    CHANGED = "Changed"


@dataclass(frozen=True)
class NotificationMessage:
    """One parsed notification, in the order the device sent it."""

    topic: str
    operation: Optional[str]
    created_at: datetime
    source: tuple[tuple[str, str], ...] = ()
    data: tuple[tuple[str, str], ...] = ()

    def data_value(self, name: str) -> Optional[str]:
        return next((value for key, value in self.data if key == name), None)

    def source_value(self, name: str) -> Optional[str]:
        return next((value for key, value in self.source if key == name), None)

    @property
    def is_known_operation(self) -> bool:
        return self.operation in PropertyOperation._value2member_map_


@dataclass(frozen=True)
class NotificationBatch:
    """Messages returned by a single PullMessages call."""

    messages: tuple[NotificationMessage, ...] = ()
    current_time: Optional[datetime] = None
    termination_time: Optional[datetime] = None

    def __iter__(self) -> Iterator[NotificationMessage]:
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)


@dataclass
class Subscription:
    """An active PullPoint subscription on a device."""

    address: str
    topic_filter: Optional[TopicFilter] = None
    termination_time: Optional[datetime] = None
    current_time: Optional[datetime] = None


class SubscriptionCallbacks(Protocol):
    """Receiver of subscription output. Methods may be sync or async."""

    def on_batch(self, batch: NotificationBatch) -> Optional[Awaitable[None]]:
        ...

    def on_ended(self, reason: EndReason) -> Optional[Awaitable[None]]:
        ...


@dataclass
class FunctionCallbacks:
    """Adapts plain functions to SubscriptionCallbacks."""

    batch_handler: Callable[[NotificationBatch], Any]
    ended_handler: Optional[Callable[[EndReason], Any]] = None

    def on_batch(self, batch: NotificationBatch) -> Any:
        return self.batch_handler(batch)

    def on_ended(self, reason: EndReason) -> Any:
        if self.ended_handler is not None:
            return self.ended_handler(reason)
        return None


def _message_body(notification: Any) -> Any:
    """Find the tt:Message content inside a NotificationMessage.

    Returns the decoded message mapping, or a raw ``tt:Message`` element when
    the schema type was not resolved, or None.
    """
    message = get_field(notification, "Message")
    if message is None or etree.iselement(message):
        return message
    value = get_field(message, "_value_1")
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if v is not None), None)
    return value if value is not None else message


def _element_items(message: etree._Element, section: str) -> tuple[tuple[str, str], ...]:
    items = []
    for child in message:
        if local_name(child) != section:
            continue
        for item in child.iter():
            if local_name(item) == "SimpleItem":
                items.append((item.get("Name"), item.get("Value")))
    return tuple(items)


def _decoded_items(section: Any) -> tuple[tuple[str, str], ...]:
    items = get_field(section, "SimpleItem") or []
    if not isinstance(items, (list, tuple)):
        items = [items]
    return tuple((get_field(item, "Name"), get_field(item, "Value")) for item in items)


def parse_notification(notification: Any) -> NotificationMessage:
    """Parse a wsnt:NotificationMessage into a NotificationMessage.

    Topic and PropertyOperation are passed through unmodified; SimpleItem
    order is preserved.
    """
    topic = get_text(get_field(notification, "Topic")) or ""
    body = _message_body(notification)
    if body is None:
        return NotificationMessage(topic=topic, operation=None, created_at=utc_now())

    if etree.iselement(body):
        return NotificationMessage(
            topic=topic,
            operation=body.get("PropertyOperation"),
            created_at=to_datetime(body.get("UtcTime")) or utc_now(),
            source=_element_items(body, "Source"),
            data=_element_items(body, "Data"),
        )

    return NotificationMessage(
        topic=topic,
        operation=get_field(body, "PropertyOperation"),
        created_at=to_datetime(get_field(body, "UtcTime")) or utc_now(),
        source=_decoded_items(get_field(body, "Source")),
        data=_decoded_items(get_field(body, "Data")),
    )


def parse_pull_response(response: Any) -> NotificationBatch:
    """Parse a PullMessagesResponse into a NotificationBatch."""
    if response is None:
        return NotificationBatch()
    notifications = get_field(response, "NotificationMessage") or []
    if not isinstance(notifications, (list, tuple)):
        notifications = [notifications]
    return NotificationBatch(
        messages=tuple(parse_notification(n) for n in notifications),
        current_time=to_datetime(get_field(response, "CurrentTime")),
        termination_time=to_datetime(get_field(response, "TerminationTime")),
    )


def is_subscription_gone(fault: ProtocolFault) -> bool:
    """Whether a fault means the device dropped the subscription."""
    text = " ".join(
        part for part in (fault.code, fault.detail, *fault.subcodes) if part
    ).lower()
    if any(marker in text for marker in _SUBSCRIPTION_GONE_MARKERS):
        return True
    return "subscription" in text and "expire" in text


def is_digital_input_change(
    message: NotificationMessage, name: str = "LogicalState", value: str = "true"
) -> bool:
    """Caller-side check for a digital input (e.g. panic button) transition.

    Only ``Changed`` notifications on a Device/Trigger/DigitalInput topic
    whose data item ``name`` equals ``value`` count.
    """
    if "Device/Trigger/DigitalInput" not in message.topic:
        return False
    if (message.operation or "").lower() != PropertyOperation.CHANGED.value.lower():
        return False
    return any(
        key.lower() == name.lower() and (item or "").lower() == value.lower()
        for key, item in message.data
        if key
    )


def _termination_from_lifetime(
    lifetime: str, current_time: Optional[datetime]
) -> Optional[datetime]:
    duration = parse_duration(lifetime)
    if duration is None:
        return to_datetime(lifetime)
    return (current_time or utc_now()) + duration


async def create_subscription(
    events: EventsService,
    topic_filter: Optional[TopicFilter] = None,
    initial_termination_time: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Subscription:
    """Create a PullPoint subscription on the device's Events service.

    Args:
        events: Bound Events service of a DeviceSession
        topic_filter: Topics to receive (None = everything)
        initial_termination_time: Requested lifetime, e.g. "PT1M"

    Raises:
        SubscriptionRejected: The device refused the filter or lifetime
        Unreachable: The device did not answer
    """
    settings = settings or get_settings()
    lifetime = initial_termination_time or settings.subscription_lifetime

    try:
        response = await events.create_pull_point_subscription(topic_filter, lifetime)
    except ProtocolFault as fault:
        raise SubscriptionRejected(
            f"Device refused PullPoint subscription ({fault.code}): {fault.detail}"
        ) from fault
    except TransportError as e:
        raise Unreachable(f"Failed to create subscription at {events.address}: {e}") from e

    reference = get_field(response, "SubscriptionReference")
    address = get_text(get_field(reference, "Address"))
    if not address or not address.strip():
        raise SubscriptionRejected("Device returned no subscription address")

    current_time = to_datetime(get_field(response, "CurrentTime"))
    termination_time = to_datetime(get_field(response, "TerminationTime"))
    if termination_time is None:
        termination_time = _termination_from_lifetime(lifetime, current_time)

    logger.info(f"PullPoint subscription created at {address.strip()} (lifetime {lifetime})")
    return Subscription(
        address=address.strip(),
        topic_filter=topic_filter,
        termination_time=termination_time,
        current_time=current_time,
    )


class PullPointSubscriber:
    """Background worker polling one PullPoint subscription.

    Example usage:
        subscription = await create_subscription(events, TopicFilter.of(
            "tns1:Device/Trigger/DigitalInput//."
        ))
        subscriber = run_subscription(events, subscription, callbacks)
        ...
        await subscriber.terminate()
    """

    def __init__(
        self,
        events: EventsService,
        subscription: Subscription,
        callbacks: SubscriptionCallbacks,
        settings: Optional[Settings] = None,
    ):
        self.events = events
        self.subscription = subscription
        self._callbacks = callbacks
        self._settings = settings or get_settings()

        self._state = SubscriptionState.CREATED
        self._end_reason: Optional[EndReason] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._consecutive_faults = 0
        self._clock_skew = timedelta(0)
        self._renew_failed_for: Optional[datetime] = None

        self.pulls_issued = 0
        self.batches_delivered = 0
        self.transient_failures = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def end_reason(self) -> Optional[EndReason]:
        return self._end_reason

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def is_running(self) -> bool:
        return self._state in (SubscriptionState.POLLING, SubscriptionState.TERMINATING)

    def start(self) -> "PullPointSubscriber":
        """Start the polling task. A subscriber can only be started once."""
        if self._task is not None:
            raise SubscriptionError(f"Subscription {self.subscription.address} already started")
        self._task = asyncio.create_task(
            self._run(), name=f"pullpoint:{self.subscription.address}"
        )
        return self

    def request_termination(self) -> None:
        """Ask the worker to stop after the current pull.

        Returns immediately; use ``wait_terminated`` (or ``terminate``) to
        wait for the unsubscribe to finish. Repeated calls have no effect.
        """
        if self._state in (SubscriptionState.TERMINATING, SubscriptionState.TERMINATED):
            return
        self._state = SubscriptionState.TERMINATING
        self._stop.set()
        logger.info(f"Termination requested for subscription {self.subscription.address}")

    async def wait_terminated(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker to reach TERMINATED.

        Returns:
            True if terminated, False if ``timeout`` expired first
        """
        if self._task is None:
            raise SubscriptionError(f"Subscription {self.subscription.address} was never started")
        await asyncio.wait({self._task}, timeout=timeout)
        return self._state is SubscriptionState.TERMINATED

    async def terminate(self, timeout: Optional[float] = None) -> bool:
        """Request termination and wait for it."""
        self.request_termination()
        return await self.wait_terminated(timeout)

    async def _run(self) -> None:
        reason = EndReason.CANCELLED
        if self._state is SubscriptionState.CREATED:
            self._state = SubscriptionState.POLLING
        logger.info(f"Polling subscription {self.subscription.address}")

        try:
            reason = await self._poll_loop()
            if reason is not EndReason.EXPIRED:
                await self._unsubscribe()
        except asyncio.CancelledError:
            reason = EndReason.CANCELLED
            raise
        except Exception:
            logger.exception(f"Subscription worker for {self.subscription.address} crashed")
            reason = EndReason.UNREACHABLE
        finally:
            self._state = SubscriptionState.TERMINATED
            self._end_reason = reason
            logger.info(
                f"Subscription {self.subscription.address} terminated ({reason.value})"
            )
            await self._notify_ended(reason)

    async def _poll_loop(self) -> EndReason:
        address = self.subscription.address
        timeout = timedelta(seconds=self._settings.pull_timeout)
        delay = self._settings.pull_retry_delay

        while not self._stop.is_set():
            await self._renew_if_due()

            self.pulls_issued += 1
            try:
                response = await self.events.pull_messages(
                    address,
                    timeout=timeout,
                    message_limit=self._settings.pull_message_limit,
                )
            except ProtocolFault as fault:
                if is_subscription_gone(fault):
                    logger.warning(f"Subscription {address} ended by device: {fault}")
                    return EndReason.EXPIRED
                self._consecutive_faults += 1
                if self._consecutive_faults > self._settings.pull_fault_retries:
                    logger.error(
                        f"Giving up on subscription {address} after "
                        f"{self._consecutive_faults} faults: {fault}"
                    )
                    return EndReason.UNREACHABLE
                logger.warning(f"PullMessages fault for {address}: {fault}, retrying")
                await self._pause(delay)
                continue
            except TransportError as e:
                self.transient_failures += 1
                logger.warning(f"PullMessages error for {address}: {e}, retrying in {delay}s")
                await self._pause(delay)
                continue

            self._consecutive_faults = 0
            batch = parse_pull_response(response)
            self._track_times(batch)
            if batch.messages:
                await self._deliver(batch)

        return EndReason.CANCELLED

    def _track_times(self, batch: NotificationBatch) -> None:
        if batch.current_time is not None:
            self._clock_skew = batch.current_time - utc_now()
        if batch.termination_time is not None:
            self.subscription.termination_time = batch.termination_time
        self.subscription.current_time = batch.current_time or self.subscription.current_time

    async def _renew_if_due(self) -> None:
        termination = self.subscription.termination_time
        margin = self._settings.renew_margin
        if margin <= 0 or termination is None or termination == self._renew_failed_for:
            return
        remaining = termination - (utc_now() + self._clock_skew)
        if remaining > timedelta(seconds=margin):
            return

        address = self.subscription.address
        lifetime = self._settings.subscription_lifetime
        try:
            response = await self.events.renew(address, lifetime)
        except TransportError as e:
            # The device will report the subscription as gone once it expires
            logger.warning(f"Failed to renew subscription {address}: {e}")
            self._renew_failed_for = termination
            return

        current_time = to_datetime(get_field(response, "CurrentTime"))
        if current_time is not None:
            self._clock_skew = current_time - utc_now()
        renewed = to_datetime(get_field(response, "TerminationTime"))
        if renewed is None:
            renewed = _termination_from_lifetime(lifetime, utc_now() + self._clock_skew)
        self.subscription.termination_time = renewed
        logger.debug(f"Renewed subscription {address} until {renewed}")

    async def _pause(self, delay: float) -> None:
        """Sleep before a retry, waking early if termination is requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _deliver(self, batch: NotificationBatch) -> None:
        self.batches_delivered += 1
        try:
            await _maybe_await(self._callbacks.on_batch(batch))
        except Exception:
            logger.exception(
                f"on_batch callback failed for subscription {self.subscription.address}"
            )

    async def _unsubscribe(self) -> None:
        address = self.subscription.address
        try:
            await self.events.unsubscribe(address)
            logger.debug(f"Unsubscribed {address}")
        except Exception as e:
            logger.warning(f"Unsubscribe failed for {address}, it will expire on its own: {e}")

    async def _notify_ended(self, reason: EndReason) -> None:
        try:
            await _maybe_await(self._callbacks.on_ended(reason))
        except Exception:
            logger.exception(
                f"on_ended callback failed for subscription {self.subscription.address}"
            )


async def _maybe_await(result: Union[Awaitable[None], None]) -> None:
    if inspect.isawaitable(result):
        await result


def run_subscription(
    events: EventsService,
    subscription: Subscription,
    callbacks: SubscriptionCallbacks,
    settings: Optional[Settings] = None,
) -> PullPointSubscriber:
    """Start polling ``subscription`` in a background task."""
    return PullPointSubscriber(events, subscription, callbacks, settings).start()
