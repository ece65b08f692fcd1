"""Exact-topic routing of inbound messages.

Many simulators share one transport connection.  Each registers the
topics it listens on (its command topic, and briefly a provisioning
reply topic) and the router fans inbound messages out by exact topic
match.  Messages for topics nobody registered are dropped quietly:
on a shared connection most traffic belongs to someone else.
"""

from __future__ import annotations

import logging

from deckhand._mqtt import MessageCallback

logger = logging.getLogger(__name__)


class TopicRouter:
    """Routes inbound messages to per-topic handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, MessageCallback] = {}

    def register(self, topic: str, handler: MessageCallback) -> None:
        """Register *handler* for *topic*.

        Raises:
            ValueError: If a handler is already registered for *topic*
                or the topic contains a wildcard.
        """
        if "+" in topic or "#" in topic:
            msg = f"Router topics must be exact, got wildcard topic '{topic}'"
            raise ValueError(msg)
        if topic in self._handlers:
            msg = f"Handler already registered for topic '{topic}'"
            raise ValueError(msg)
        self._handlers[topic] = handler

    def unregister(self, topic: str) -> None:
        """Remove the handler for *topic*, if any."""
        self._handlers.pop(topic, None)

    async def route(self, topic: str, payload: str) -> None:
        """Dispatch an inbound message to the handler for its topic."""
        handler = self._handlers.get(topic)
        if handler is None:
            logger.debug("No handler registered for topic %s", topic)
            return
        await handler(topic, payload)

    def __contains__(self, topic: object) -> bool:
        return topic in self._handlers

    @property
    def subscriptions(self) -> list[str]:
        """Return the topics that currently have a handler."""
        return list(self._handlers)
