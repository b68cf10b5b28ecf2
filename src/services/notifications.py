"""
Notification collaborator.

The ride service pushes lifecycle events to riders and drivers through a
``Notifier``.  Delivery channels (push, e-mail, in-app) live outside this
service; ``LogNotifier`` is the default and only writes the event to the log.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, user_id: str, payload: dict[str, Any]) -> None: ...


class LogNotifier:
    async def send(self, user_id: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Notify user=%s type=%s title=%r ride=%s",
            user_id,
            payload.get("type"),
            payload.get("title"),
            payload.get("reference"),
        )


def ride_event(ride_id: str, title: str, message: str, **metadata: Any) -> dict:
    """Payload shape shared by every ride notification."""
    return {
        "type": "ride",
        "title": title,
        "message": message,
        "priority": metadata.pop("priority", "medium"),
        "reference": ride_id,
        "metadata": metadata,
    }
