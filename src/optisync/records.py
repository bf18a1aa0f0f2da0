"""Record model and the entity kinds held by local stores."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, field_validator


class RecordStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SortOrder(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


def _require_text(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must not be blank")
    return value


class _Draft(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Row(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Union[str, int]

    @field_validator("id")
    @classmethod
    def _stringify_id(cls, value: Union[str, int]) -> str:
        text = str(value)
        if not text:
            raise ValueError("id must not be empty")
        return text


class PostDraft(_Draft):
    user_email: str
    username: str
    content: str
    image_url: str | None = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        return _require_text(value)


class PostRow(_Row):
    user_email: str
    username: str
    content: str
    image_url: str | None = None
    created_at: str
    updated_at: str | None = None


class CommentDraft(_Draft):
    post_id: str
    user_email: str
    username: str
    content: str

    @field_validator("post_id", "content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _require_text(value)


class CommentRow(_Row):
    post_id: Union[str, int]
    user_email: str
    username: str
    content: str
    created_at: str

    @field_validator("post_id")
    @classmethod
    def _stringify_post_id(cls, value: Union[str, int]) -> str:
        return str(value)


class DrawingDraft(_Draft):
    paths: str
    thumbnail: str | None = None
    user_email: str | None = None

    @field_validator("paths")
    @classmethod
    def _paths_not_empty(cls, value: str) -> str:
        try:
            strokes = json.loads(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("paths must be a JSON list of strokes") from exc
        if not isinstance(strokes, list) or not strokes:
            raise ValueError("cannot save an empty drawing")
        return value


class DrawingRow(_Row):
    paths: str
    thumbnail: str | None = None
    user_email: str | None = None
    created_at: str
    updated_at: str | None = None


@dataclass(frozen=True)
class EntityKind:
    """Describes one remote table and how its records are ordered locally."""

    name: str
    table: str
    draft_schema: type[BaseModel]
    row_schema: type[BaseModel]
    order: SortOrder
    order_field: str = "created_at"
    tracks_updates: bool = True

    @property
    def ascending(self) -> bool:
        return self.order is SortOrder.ASCENDING


POSTS = EntityKind(
    name="post",
    table="community_posts",
    draft_schema=PostDraft,
    row_schema=PostRow,
    order=SortOrder.DESCENDING,
)

COMMENTS = EntityKind(
    name="comment",
    table="community_comments",
    draft_schema=CommentDraft,
    row_schema=CommentRow,
    order=SortOrder.ASCENDING,
    tracks_updates=False,
)

DRAWINGS = EntityKind(
    name="drawing",
    table="drawings",
    draft_schema=DrawingDraft,
    row_schema=DrawingRow,
    order=SortOrder.DESCENDING,
)


@dataclass
class Record:
    id: str
    kind: EntityKind
    payload: dict[str, Any] = field(default_factory=dict)
    status: RecordStatus = RecordStatus.CONFIRMED
    temporary: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status is RecordStatus.PENDING

    @property
    def is_temporary(self) -> bool:
        return self.temporary

    @property
    def sort_key(self) -> str:
        return str(self.payload.get(self.kind.order_field) or "")

    def with_status(self, status: RecordStatus) -> "Record":
        return replace(self, status=status)

    def snapshot(self) -> "Record":
        """Independent copy, payload included."""
        return Record(
            id=self.id,
            kind=self.kind,
            payload=copy.deepcopy(self.payload),
            status=self.status,
            temporary=self.temporary,
        )

    def as_row(self) -> dict[str, Any]:
        return {"id": self.id, **self.payload}
