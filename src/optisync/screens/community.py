"""Community feed: posts, per-post comment threads and image attachments."""

from __future__ import annotations

import logging
import mimetypes
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from optisync.errors import NotFoundError, ValidationError
from optisync.gateways.base import BlobStorageGateway, DataGateway
from optisync.ids import TempIdGenerator
from optisync.local_store import LocalStore
from optisync.reconciler import MutationOutcome, MutationReconciler, Notifier
from optisync.records import COMMENTS, POSTS, Record
from optisync.session import SessionContext
from optisync.utils.http import file_extension
from optisync.utils.time import epoch_millis, utc_now_iso

logger = logging.getLogger(__name__)

ViewMode = Literal["feed", "comments"]


@dataclass(frozen=True)
class ImageAttachment:
    data: bytes
    filename: str = "image.jpg"

    @property
    def extension(self) -> str:
        return file_extension(self.filename)

    @property
    def content_type(self) -> str:
        guessed, _ = mimetypes.guess_type(f"image.{self.extension}")
        return guessed or "application/octet-stream"


class CommunityFeed:
    """Posts newest first; comments of the selected post oldest first."""

    def __init__(
        self,
        session: SessionContext,
        data: DataGateway,
        blobs: BlobStorageGateway,
        notifier: Notifier | None = None,
        *,
        images_bucket: str = "community-images",
        id_generator: TempIdGenerator | None = None,
        clock: Callable[[], str] = utc_now_iso,
        millis: Callable[[], int] = epoch_millis,
    ) -> None:
        self.session = session
        self._data = data
        self._blobs = blobs
        self._notifier = notifier
        self._images_bucket = images_bucket
        self._id_generator = id_generator
        self._clock = clock
        self._millis = millis

        self.posts = LocalStore(POSTS)
        self._posts = MutationReconciler(
            self.posts, data, id_generator=id_generator, notifier=notifier, clock=clock
        )
        self.comments: LocalStore | None = None
        self._comments: MutationReconciler | None = None
        self.selected_post_id: str | None = None

    @property
    def view_mode(self) -> ViewMode:
        return "comments" if self.selected_post_id is not None else "feed"

    @property
    def _email(self) -> str:
        return self.session.user.email

    async def refresh(self) -> bool:
        return await self._posts.refresh()

    async def create_post(
        self, content: str, image: ImageAttachment | None = None
    ) -> MutationOutcome:
        payload = {
            "user_email": self._email,
            "username": self.session.user.display_name,
            "content": content,
            "image_url": None,
        }
        if image is None:
            return await self._posts.create(payload)

        async def attach_image(row: dict[str, Any]) -> dict[str, Any]:
            key = f"{self._email}/{self._millis()}.{image.extension}"
            row["image_url"] = await self._blobs.upload(
                self._images_bucket, key, image.data, image.content_type
            )
            return row

        return await self._posts.create(payload, prepare=attach_image)

    async def delete_post(self, post_id: str) -> MutationOutcome:
        self._require_owner(self.posts, post_id, "post")
        if self.selected_post_id == post_id:
            self.close_thread()
        return await self._posts.delete(post_id)

    async def open_thread(self, post_id: str) -> bool:
        if post_id not in self.posts:
            raise NotFoundError(f"post {post_id} is not displayed")
        self.close_thread()
        self.comments = LocalStore(COMMENTS)
        self._comments = MutationReconciler(
            self.comments,
            self._data,
            id_generator=self._id_generator,
            notifier=self._notifier,
            clock=self._clock,
        )
        self.selected_post_id = post_id
        return await self._comments.refresh({"post_id": post_id})

    def close_thread(self) -> None:
        if self.comments is not None:
            self.comments.close()
        self.comments = None
        self._comments = None
        self.selected_post_id = None

    async def add_comment(self, content: str) -> MutationOutcome:
        if self._comments is None or self.selected_post_id is None:
            raise ValidationError("Open a post before commenting")
        return await self._comments.create(
            {
                "post_id": self.selected_post_id,
                "user_email": self._email,
                "username": self.session.user.display_name,
                "content": content,
            }
        )

    async def delete_comment(self, comment_id: str) -> MutationOutcome:
        if self._comments is None or self.comments is None:
            raise ValidationError("No comment thread is open")
        self._require_owner(self.comments, comment_id, "comment")
        return await self._comments.delete(comment_id)

    def image_url(self, post: Record) -> str | None:
        key = post.payload.get("image_url")
        if not key:
            return None
        return self._blobs.public_url(self._images_bucket, str(key))

    def close(self) -> None:
        self.close_thread()
        self.posts.close()

    def _require_owner(self, store: LocalStore, record_id: str, noun: str) -> None:
        record = store.get(record_id)
        if record is None:
            raise NotFoundError(f"{noun} {record_id} is not displayed")
        if record.payload.get("user_email") != self._email:
            raise ValidationError(f"You can only delete your own {noun}s")
