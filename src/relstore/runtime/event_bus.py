"""
Change bus for database events.

Backends publish exactly one event per logical mutation; collections and
any other observer subscribe to channels named ``EVT_DB_<OP>:<MODELID>``
(or ``EVT_DB_UPDATE_BULK`` for transactions spanning several records).
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

WILDCARD = "*"


# =============================================================================
# Event Types
# =============================================================================


class DbOperation(StrEnum):
    """Mutation kinds, as they appear in channel names."""

    INSERT = "INSERT"
    INSERT_MANY = "INSERT_MANY"
    UPDATE = "UPDATE"
    UPDATE_MANY = "UPDATE_MANY"
    DELETE = "DELETE"
    DELETE_MANY = "DELETE_MANY"
    UPDATE_BULK = "UPDATE_BULK"


BULK_CHANNEL = f"EVT_DB_{DbOperation.UPDATE_BULK}"


def channel_name(operation: DbOperation | str, model_id: str | None = None) -> str:
    """
    Build a channel name.

    ``EVT_DB_UPDATE_BULK`` is model-agnostic; every other channel carries the
    upper-cased model id.
    """
    operation = DbOperation(operation)
    if operation == DbOperation.UPDATE_BULK:
        return BULK_CHANNEL
    if not model_id:
        raise ValueError(f"{operation} events need a model id")
    return f"EVT_DB_{operation}:{model_id.upper()}"


def parse_channel(channel: str) -> tuple[DbOperation, str | None]:
    """Split a channel name into (operation, upper-cased model id)."""
    head, _, model = channel.partition(":")
    return DbOperation(head.removeprefix("EVT_DB_")), model or None


@dataclass
class ChangeEvent:
    """A database change, as broadcast to observers."""

    channel: str
    model_id: str | None = None
    id: str | None = None
    data: Any = None
    db_mode: str | None = None
    account_id: str | None = None
    user_id: str | None = None
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    @property
    def operation(self) -> DbOperation:
        return parse_channel(self.channel)[0]

    def to_dict(self) -> dict[str, Any]:
        """Wire format."""
        payload: dict[str, Any] = {
            "channel": self.channel,
            "dbMode": self.db_mode,
            "accountId": self.account_id,
            "userId": self.user_id,
            "modelId": self.model_id,
            "data": self.data,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChangeEvent:
        return cls(
            channel=payload["channel"],
            model_id=payload.get("modelId"),
            id=payload.get("id"),
            data=payload.get("data"),
            db_mode=payload.get("dbMode"),
            account_id=payload.get("accountId"),
            user_id=payload.get("userId"),
        )


# =============================================================================
# Handlers
# =============================================================================


EventHandler = Callable[[ChangeEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    id: str
    channel: str
    handler: EventHandler


# =============================================================================
# Change Bus
# =============================================================================


@dataclass
class ChangeBus:
    """
    Publish/subscribe hub for change events.

    Handlers may be sync or async. A failing handler is logged and skipped;
    the remaining handlers still receive the event.
    """

    _subscriptions: dict[str, Subscription] = field(default_factory=dict)
    _enabled: bool = True
    _published: int = 0

    def subscribe(self, channel: str, handler: EventHandler) -> str:
        """
        Subscribe a handler to a channel (``*`` receives everything).

        Returns:
            Subscription id, for ``unsubscribe``
        """
        subscription_id = uuid4().hex
        self._subscriptions[subscription_id] = Subscription(subscription_id, channel, handler)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def subscribers(self, channel: str) -> list[Subscription]:
        return [
            s for s in self._subscriptions.values() if s.channel in (channel, WILDCARD)
        ]

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def published_count(self) -> int:
        return self._published

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every subscriber of its channel."""
        if not self._enabled:
            return
        self._published += 1

        for subscription in self.subscribers(event.channel):
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Change handler %s failed for %s",
                    getattr(subscription.handler, "__name__", subscription.handler),
                    event.channel,
                )

    async def emit(
        self,
        operation: DbOperation,
        model_id: str | None,
        *,
        record_id: str | None = None,
        data: Any = None,
        db_mode: str | None = None,
        account_id: str | None = None,
        user_id: str | None = None,
    ) -> ChangeEvent:
        """Build the event for a mutation and publish it."""
        event = ChangeEvent(
            channel=channel_name(operation, model_id),
            model_id=model_id,
            id=record_id,
            data=data,
            db_mode=db_mode,
            account_id=account_id,
            user_id=user_id,
        )
        await self.publish(event)
        return event


# =============================================================================
# Global Change Bus
# =============================================================================


_global_bus: ChangeBus | None = None


def get_change_bus() -> ChangeBus:
    """Get the global change bus instance."""
    global _global_bus
    if _global_bus is None:
        _global_bus = ChangeBus()
    return _global_bus


def set_change_bus(bus: ChangeBus) -> None:
    """Set the global change bus instance."""
    global _global_bus
    _global_bus = bus


def reset_change_bus() -> None:
    """Reset the global change bus (mainly for testing)."""
    global _global_bus
    _global_bus = None
