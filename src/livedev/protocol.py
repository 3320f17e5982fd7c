"""Message types carried on the socket channel.

Every frame is a JSON text object. Reload notifications flow server to
client only; collaboration messages use the `collab` channel envelope in
both directions::

    {"channel": "collab", "type": "doc-sync", "docId": "d1", "userId": "u1", "content": "..."}

Inbound collaboration frames are decoded into one of a closed set of
dataclasses. Types the server does not know become `UnknownCollab`, which
the relay ignores.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .errors import MalformedFrameError

COLLAB_CHANNEL = "collab"


@dataclass(frozen=True)
class ReloadMessage:
    file: str
    extension: str

    def to_json(self) -> str:
        return json.dumps({"type": "reload", "file": self.file, "extension": self.extension})


@dataclass(frozen=True)
class CollabMessage:
    doc_id: str
    user_id: Optional[str]

    type_name = ""

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        message = {
            "channel": COLLAB_CHANNEL,
            "type": self.type_name,
            "docId": self.doc_id,
            "userId": self.user_id,
        }
        message.update(self.payload())
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class GetState(CollabMessage):
    type_name = "get-state"


@dataclass(frozen=True)
class DocSync(CollabMessage):
    content: str = ""

    type_name = "doc-sync"

    def payload(self):
        return {"content": self.content}


@dataclass(frozen=True)
class CursorSync(CollabMessage):
    cursor: Any = None

    type_name = "cursor-sync"

    def payload(self):
        return {"cursor": self.cursor}


@dataclass(frozen=True)
class CommentAdd(CollabMessage):
    comment: Optional[Dict[str, Any]] = None

    type_name = "comment-add"

    def payload(self):
        return {"comment": self.comment}


@dataclass(frozen=True)
class CommentRemove(CollabMessage):
    comment: Optional[Dict[str, Any]] = None

    type_name = "comment-remove"

    def payload(self):
        return {"comment": self.comment}

    @property
    def comment_id(self) -> Any:
        return self.comment.get("id")


@dataclass(frozen=True)
class UnknownCollab(CollabMessage):
    raw_type: Any = None


InboundCollab = Union[GetState, DocSync, CursorSync, CommentAdd, CommentRemove, UnknownCollab]


def state_message(doc_id: str, content: str, cursors: Dict, comments: list) -> str:
    """Encode the reply to a `get-state` request."""
    return json.dumps(
        {
            "channel": COLLAB_CHANNEL,
            "type": "state",
            "docId": doc_id,
            "content": content,
            "cursors": cursors,
            "comments": comments,
        }
    )


def parse_collab_frame(raw: Union[str, bytes]) -> Optional[InboundCollab]:
    """Decode an inbound frame.

    Returns None for frames that do not belong to the collab channel (they
    are someone else's business). Raises MalformedFrameError for frames that
    claim the collab channel but cannot be decoded, or are not JSON at all.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"not JSON: {e}", text) from e

    if not isinstance(data, dict):
        raise MalformedFrameError("frame is not a JSON object", text)

    if data.get("channel") != COLLAB_CHANNEL:
        return None

    doc_id = data.get("docId")
    if not isinstance(doc_id, str) or not doc_id:
        raise MalformedFrameError("missing docId", text)

    user_id = data.get("userId")
    message_type = data.get("type")

    if message_type == "get-state":
        return GetState(doc_id, user_id)

    if message_type == "doc-sync":
        content = data.get("content")
        if not isinstance(content, str):
            raise MalformedFrameError("doc-sync without string content", text)
        return DocSync(doc_id, user_id, content)

    if message_type == "cursor-sync":
        if not isinstance(user_id, str):
            raise MalformedFrameError("cursor-sync without userId", text)
        return CursorSync(doc_id, user_id, data.get("cursor"))

    if message_type in ("comment-add", "comment-remove"):
        comment = data.get("comment")
        if not isinstance(comment, dict):
            raise MalformedFrameError(f"{message_type} without comment object", text)
        if message_type == "comment-add":
            return CommentAdd(doc_id, user_id, comment)
        if "id" not in comment:
            raise MalformedFrameError("comment-remove without comment id", text)
        return CommentRemove(doc_id, user_id, comment)

    return UnknownCollab(doc_id, user_id, message_type)
