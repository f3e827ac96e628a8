"""
Connection registry and per-user fan-out.

One user may hold several live connections (phone + tablet); ``send``
delivers to all of them.  The registry is owned by the application
instance (``app.state.registry``) and is the only in-process mutable
state shared between request handlers.

Mutations happen under an ``asyncio.Lock``; network writes happen outside
it on a snapshot of the user's connections, so one slow socket cannot
stall registration for everyone else.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import defaultdict
from typing import Any, Optional, Protocol

from dispatch_engine.domain.events import ServerEvent

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "DELIVERED"
    NO_CONNECTION = "NO_CONNECTION"


class ConnectionRegistry:
    def __init__(self) -> None:
        self._by_user: dict[int, set[Connection]] = defaultdict(set)
        self._by_conn: dict[Connection, int] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, connection: Connection) -> None:
        async with self._lock:
            previous = self._by_conn.get(connection)
            if previous is not None and previous != user_id:
                self._discard(connection)
            self._by_user[user_id].add(connection)
            self._by_conn[connection] = user_id
        logger.info("Connection registered for user %s", user_id)

    async def unregister(self, connection: Connection) -> Optional[int]:
        """Forget *connection*.  Safe to call twice; returns the owner, if any."""
        async with self._lock:
            user_id = self._discard(connection)
        if user_id is not None:
            logger.info("Connection unregistered for user %s", user_id)
        return user_id

    async def send(self, user_id: int, event: ServerEvent) -> DeliveryStatus:
        async with self._lock:
            targets = list(self._by_user.get(user_id, ()))

        if not targets:
            logger.debug("No live connection for user %s (%s)", user_id, _name(event))
            return DeliveryStatus.NO_CONNECTION

        payload = event.model_dump(mode="json")
        delivered = 0
        for conn in targets:
            try:
                await conn.send_json(payload)
                delivered += 1
            except Exception:
                logger.warning(
                    "Dropping dead connection for user %s", user_id, exc_info=True
                )
                await self.unregister(conn)

        return DeliveryStatus.DELIVERED if delivered else DeliveryStatus.NO_CONNECTION

    def is_connected(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def stats(self) -> dict[str, int]:
        return {"users": len(self._by_user), "connections": len(self._by_conn)}

    # caller holds the lock
    def _discard(self, connection: Connection) -> Optional[int]:
        user_id = self._by_conn.pop(connection, None)
        if user_id is None:
            return None
        conns = self._by_user.get(user_id)
        if conns is not None:
            conns.discard(connection)
            if not conns:
                del self._by_user[user_id]
        return user_id


def _name(event: ServerEvent) -> str:
    return getattr(event, "event", type(event).__name__)
