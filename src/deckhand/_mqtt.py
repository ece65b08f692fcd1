"""MQTT transport port and adapters.

Provides :class:`MqttPort` (Protocol) and four implementations:

- :class:`MqttClient` — real aiomqtt-based client with reconnection
- :class:`LoopbackMqttClient` — in-process broker for single-process runs
- :class:`MockMqttClient` — test double that records calls
- :class:`NullMqttClient` — silent no-op adapter

Publish failures surface as :class:`TransientTransportError` so that
callers can retry without knowing which adapter is in use.

``aiomqtt`` is imported lazily inside :meth:`MqttClient._connection_loop`
so the other adapters work without it installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from deckhand._errors import TransientTransportError
from deckhand._settings import MqttSettings
from deckhand._topics import topic_matches

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament configuration.

    Abstracts ``aiomqtt.Will`` so that callers never depend on the
    aiomqtt package directly.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that deliver inbound messages to registered callbacks."""

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters that own a connection needing start/stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Silent no-op MQTT adapter."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        """Silently discard a publish request."""
        logger.debug("NullMqttClient.publish(%s): discarded", topic)

    async def subscribe(self, topic: str) -> None:
        """Silently discard a subscribe request."""
        logger.debug("NullMqttClient.subscribe(%s): discarded", topic)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    Publishes are recorded, never delivered.  Use :meth:`deliver` to
    simulate inbound traffic, or :class:`LoopbackMqttClient` when
    publishers and subscribers must actually talk to each other.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call."""
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        """Record a subscribe call."""
        self.subscriptions.append(topic)

    # -- Test helpers -------------------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register an inbound-message callback."""
        self._callbacks.append(callback)

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data and callbacks."""
        self.published.clear()
        self.subscriptions.clear()
        self._callbacks.clear()

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Loopback adapter
# ---------------------------------------------------------------------------


@dataclass
class LoopbackMqttClient:
    """In-process broker: publishes are delivered to matching subscribers.

    Lets one process host the coordinator and a simulated fleet without
    an external broker (``deckhand --dry-run``).  Delivery happens
    inline in the publisher's task, so per-publisher ordering holds.
    A failing callback is logged and does not affect the publisher or
    the other callbacks.  Retained messages are replayed to later
    subscribers, as a broker would.

    Every publish is also recorded in :attr:`published` for inspection.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    _filters: set[str] = field(default_factory=set, init=False, repr=False)
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _retained: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record *payload* and deliver it if any subscription matches."""
        self.published.append((topic, payload, retain, qos))
        if retain:
            self._retained[topic] = payload
        if any(topic_matches(f, topic) for f in self._filters):
            await self._dispatch(topic, payload)

    async def subscribe(self, topic: str) -> None:
        """Add a subscription filter and replay matching retained messages."""
        if topic in self._filters:
            return
        self._filters.add(topic)
        for retained_topic, payload in list(self._retained.items()):
            if topic_matches(topic, retained_topic):
                await self._dispatch(retained_topic, payload)

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for delivered messages."""
        self._callbacks.append(callback)

    def get_messages_for(self, topic: str) -> list[str]:
        """Return every payload published to *topic*, in order."""
        return [payload for t, payload, _, _ in self.published if t == topic]

    async def _dispatch(self, topic: str, payload: str) -> None:
        for cb in list(self._callbacks):
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    A background task keeps a persistent connection, restores tracked
    subscriptions after each reconnect and backs off exponentially
    (with jitter) between attempts, capped at
    ``settings.reconnect_max_interval``.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    # internal state --------------------------------------------------------
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(
        default_factory=set,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            TransientTransportError: If the client is not connected or
                the broker rejects the publish.
        """
        if self._client is None:
            msg = f"MQTT client is not connected (publish to {topic})"
            raise TransientTransportError(msg)
        try:
            await self._client.publish(
                topic,
                payload,
                retain=retain,
                qos=qos,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            msg = f"Publish to {topic} failed: {exc}"
            raise TransientTransportError(msg) from exc
        logger.debug(
            "Published to %s (qos=%d, retain=%s)",
            topic,
            qos,
            retain,
        )

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*, tracked for restoration on reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            try:
                await self._client.subscribe(
                    topic,
                    qos=self.settings.qos,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                msg = f"Subscribe to {topic} failed: {exc}"
                raise TransientTransportError(msg) from exc

    # -- Callback registration ---------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for inbound messages."""
        self._callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(
            self._connection_loop(),
        )

    async def stop(self) -> None:
        """Stop the connection loop and clean up.  Idempotent."""
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Block until the first connection is established.

        Raises:
            TransientTransportError: If *timeout* elapses first.
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError as exc:
            msg = (
                f"Could not connect to MQTT broker "
                f"{self.settings.host}:{self.settings.port} within {timeout}s"
            )
            raise TransientTransportError(msg) from exc

    @property
    def is_connected(self) -> bool:
        """Whether the client is currently connected to the broker."""
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    def _next_delay(self, failures: int) -> float:
        """Exponential backoff with full jitter, capped."""
        base = self.settings.reconnect_interval * (2 ** max(failures - 1, 0))
        capped = min(base, self.settings.reconnect_max_interval)
        return random.uniform(capped / 2, capped)  # noqa: S311

    async def _connection_loop(self) -> None:
        """Maintain a persistent connection with auto-reconnect."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        failures = 0
        while not self._stopping:
            try:
                password: str | None = None
                if self.settings.password is not None:
                    password = self.settings.password.get_secret_value()

                will: aiomqtt.Will | None = None
                if self.will is not None:
                    will = aiomqtt.Will(
                        topic=self.will.topic,
                        payload=self.will.payload,
                        qos=self.will.qos,
                        retain=self.will.retain,
                    )

                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    try:
                        for topic in list(self._subscriptions):
                            await client.subscribe(
                                topic,
                                qos=self.settings.qos,
                            )

                        self._connected.set()
                        failures = 0
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None

            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                delay = self._next_delay(failures)
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug(
                "Skipping message with None payload on %s",
                topic,
            )
            return

        payload = (
            message.payload.decode("utf-8")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception(
                    "Error in message callback for %s",
                    topic,
                )
