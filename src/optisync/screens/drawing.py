"""Drawing board: stroke canvas plus the saved-drawings gallery."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from optisync.errors import NotFoundError, ValidationError
from optisync.gateways.base import BlobStorageGateway, DataGateway
from optisync.ids import TempIdGenerator
from optisync.local_store import LocalStore
from optisync.reconciler import MutationOutcome, MutationReconciler, Notifier
from optisync.records import DRAWINGS
from optisync.utils.time import epoch_millis, utc_now_iso

logger = logging.getLogger(__name__)

COLOR_OPTIONS = ("#ffffff", "#ff5252", "#4fc3f7", "#9ccc65", "#ffb74d", "#ba68c8")
DEFAULT_STROKE_WIDTH = 5
MIN_STROKE_WIDTH = 1
MAX_STROKE_WIDTH = 50


def _coord(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else f"{number:g}"


@dataclass(frozen=True)
class Stroke:
    path: str
    color: str = COLOR_OPTIONS[0]
    stroke_width: float = DEFAULT_STROKE_WIDTH

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "color": self.color, "strokeWidth": self.stroke_width}

    @classmethod
    def from_dict(cls, data: Any) -> "Stroke":
        if not isinstance(data, dict) or not isinstance(data.get("path"), str):
            raise ValidationError("stroke must be an object with a path")
        try:
            width = float(data.get("strokeWidth", DEFAULT_STROKE_WIDTH))
        except (TypeError, ValueError) as exc:
            raise ValidationError("stroke width must be a number") from exc
        return cls(
            path=data["path"],
            color=str(data.get("color", COLOR_OPTIONS[0])),
            stroke_width=width,
        )


class Canvas:
    """Strokes drawn as SVG-style path commands (``M x y`` then ``L x y``...)."""

    def __init__(self, strokes: list[Stroke] | None = None) -> None:
        self.strokes: list[Stroke] = list(strokes or [])
        self.color = COLOR_OPTIONS[0]
        self.stroke_width: float = DEFAULT_STROKE_WIDTH

    @property
    def is_empty(self) -> bool:
        return not self.strokes

    def set_color(self, color: str) -> None:
        if color not in COLOR_OPTIONS:
            raise ValidationError(f"Unsupported color {color}", field="color")
        self.color = color

    def set_stroke_width(self, width: float) -> None:
        if not MIN_STROKE_WIDTH <= width <= MAX_STROKE_WIDTH:
            raise ValidationError(
                f"Stroke width must be between {MIN_STROKE_WIDTH} and {MAX_STROKE_WIDTH}",
                field="stroke_width",
            )
        self.stroke_width = width

    def begin(self, x: float, y: float) -> None:
        self.strokes.append(
            Stroke(f"M {_coord(x)} {_coord(y)}", self.color, self.stroke_width)
        )

    def extend(self, x: float, y: float) -> None:
        if not self.strokes:
            return
        last = self.strokes[-1]
        self.strokes[-1] = replace(last, path=f"{last.path} L {_coord(x)} {_coord(y)}")

    def clear(self) -> None:
        self.strokes.clear()

    def to_json(self) -> str:
        return json.dumps([stroke.to_dict() for stroke in self.strokes])

    @classmethod
    def from_json(cls, text: str) -> "Canvas":
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Drawing paths are not valid JSON") from exc
        if not isinstance(raw, list):
            raise ValidationError("Drawing paths must be a list")
        return cls([Stroke.from_dict(item) for item in raw])


class DrawingBoard:
    def __init__(
        self,
        data: DataGateway,
        blobs: BlobStorageGateway,
        notifier: Notifier | None = None,
        *,
        user_email: str | None = None,
        thumbnails_bucket: str = "drawing-thumbnails",
        id_generator: TempIdGenerator | None = None,
        clock: Callable[[], str] = utc_now_iso,
        millis: Callable[[], int] = epoch_millis,
    ) -> None:
        self._blobs = blobs
        self._user_email = user_email
        self._thumbnails_bucket = thumbnails_bucket
        self._millis = millis
        self.drawings = LocalStore(DRAWINGS)
        self._reconciler = MutationReconciler(
            self.drawings, data, id_generator=id_generator, notifier=notifier, clock=clock
        )
        self.canvas = Canvas()
        self.editing_id: str | None = None

    @property
    def edit_mode(self) -> bool:
        return self.editing_id is not None

    async def refresh(self) -> bool:
        return await self._reconciler.refresh()

    def new_drawing(self) -> None:
        self.canvas = Canvas()
        self.editing_id = None

    def edit_drawing(self, drawing_id: str) -> Canvas:
        record = self.drawings.get(drawing_id)
        if record is None:
            raise NotFoundError(f"drawing {drawing_id} is not displayed")
        self.canvas = Canvas.from_json(record.payload["paths"])
        self.editing_id = drawing_id
        return self.canvas

    async def save(self, thumbnail: bytes | None = None) -> MutationOutcome:
        if self.canvas.is_empty:
            raise ValidationError("Cannot save an empty drawing", field="paths")
        paths = self.canvas.to_json()
        prepare = self._thumbnail_uploader(thumbnail) if thumbnail else None

        if self.editing_id is not None:
            outcome = await self._reconciler.update(
                self.editing_id, {"paths": paths}, prepare=prepare
            )
        else:
            payload: dict[str, Any] = {"paths": paths, "thumbnail": None}
            if self._user_email:
                payload["user_email"] = self._user_email
            outcome = await self._reconciler.create(payload, prepare=prepare)

        if outcome.succeeded:
            logger.info("Saved drawing %s", outcome.record.id if outcome.record else "?")
            self.new_drawing()
        return outcome

    async def delete(self, drawing_id: str) -> MutationOutcome:
        if self.editing_id == drawing_id:
            self.new_drawing()
        return await self._reconciler.delete(drawing_id)

    def thumbnail_url(self, drawing_id: str) -> str | None:
        record = self.drawings.get(drawing_id)
        if record is None or not record.payload.get("thumbnail"):
            return None
        return self._blobs.public_url(self._thumbnails_bucket, str(record.payload["thumbnail"]))

    def close(self) -> None:
        self.drawings.close()

    def _thumbnail_uploader(self, data: bytes):
        async def upload(row: dict[str, Any]) -> dict[str, Any]:
            owner = self._user_email or "anonymous"
            key = f"{owner}/{self._millis()}.png"
            row["thumbnail"] = await self._blobs.upload(
                self._thumbnails_bucket, key, data, "image/png"
            )
            return row

        return upload
