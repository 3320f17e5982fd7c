"""Collaboration relay multiplexed on the socket channel.

Shared state is last-write-wins per document: the relay keeps the most
recent content, the latest cursor per user, and the set of open comments,
and rebroadcasts every accepted change to all other connections.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedFrameError
from .protocol import (
    CommentAdd,
    CommentRemove,
    CursorSync,
    DocSync,
    GetState,
    UnknownCollab,
    parse_collab_frame,
    state_message,
)
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class CollabDocument:
    content: str = ""
    cursors: Dict[str, Any] = field(default_factory=dict)
    comments: List[Dict[str, Any]] = field(default_factory=list)


class CollabRelay:
    """Applies collab-channel messages to per-document state and fans them out."""

    def __init__(
        self, connections: ConnectionRegistry, max_documents: Optional[int] = None
    ):
        self.connections = connections
        self.max_documents = max_documents
        self.documents: "OrderedDict[str, CollabDocument]" = OrderedDict()

    def document(self, doc_id: str) -> CollabDocument:
        """Return the document for `doc_id`, creating it empty on first use."""
        doc = self.documents.get(doc_id)
        if doc is None:
            doc = self.documents[doc_id] = CollabDocument()
            logger.debug(f"Created collab document {doc_id!r}")
            self._evict()
        else:
            self.documents.move_to_end(doc_id)
        return doc

    def _evict(self) -> None:
        if self.max_documents is None:
            return
        while len(self.documents) > self.max_documents:
            doc_id, _ = self.documents.popitem(last=False)
            logger.info(f"Evicted collab document {doc_id!r}")

    async def handle_frame(self, connection, raw: Union[str, bytes]) -> bool:
        """Process one inbound frame from `connection`.

        Returns True if the frame belonged to the collab channel. Malformed
        frames are logged and dropped; they never close the connection.
        """
        try:
            message = parse_collab_frame(raw)
        except MalformedFrameError as e:
            logger.warning(f"Dropping malformed frame: {e.reason}")
            return False

        if message is None:
            return False

        doc = self.document(message.doc_id)

        if isinstance(message, GetState):
            await connection.send(
                state_message(message.doc_id, doc.content, doc.cursors, doc.comments)
            )
            return True

        if isinstance(message, DocSync):
            doc.content = message.content
        elif isinstance(message, CursorSync):
            doc.cursors[message.user_id] = message.cursor
        elif isinstance(message, CommentAdd):
            doc.comments.append(message.comment)
        elif isinstance(message, CommentRemove):
            doc.comments = [
                c for c in doc.comments if c.get("id") != message.comment_id
            ]
        elif isinstance(message, UnknownCollab):
            logger.debug(f"Ignoring unknown collab type {message.raw_type!r}")
            return True

        await self.connections.broadcast(message.to_json(), exclude=connection)
        return True
