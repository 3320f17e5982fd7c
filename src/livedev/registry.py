"""Registry of open socket-channel connections and best-effort fan-out."""

import asyncio
import logging
from typing import Any, Iterator, List, Optional, Set

from websockets.protocol import State

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Open socket-channel connections owned by one server instance.

    Only touched from the event loop, so no locking is needed.
    """

    def __init__(self):
        self._connections: Set[Any] = set()

    def add(self, connection) -> None:
        self._connections.add(connection)
        logger.info(f"Client connected ({len(self._connections)} total)")

    def discard(self, connection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
            logger.info(f"Client disconnected ({len(self._connections)} total)")

    def __contains__(self, connection) -> bool:
        return connection in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._connections))

    async def broadcast(self, message: str, exclude: Optional[Any] = None) -> int:
        """Send a text frame to every open connection except `exclude`.

        A failed send is logged and does not affect delivery to the other
        connections. Returns the number of successful sends.
        """
        targets: List[Any] = []
        for connection in self:
            if connection is exclude:
                continue
            if connection.state is not State.OPEN:
                logger.debug(f"Skipping client in state {connection.state.name}")
                continue
            targets.append(connection)

        if not targets:
            return 0

        results = await asyncio.gather(
            *(connection.send(message) for connection in targets),
            return_exceptions=True,
        )

        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(
                    f"Failed to deliver message to {getattr(connection, 'remote_address', connection)}: {result}"
                )
            else:
                delivered += 1
        return delivered
