"""Interfaces of the external services consumed by the client core."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class OrderBy:
    field: str
    ascending: bool = False

    def to_param(self) -> str:
        return f"{self.field}.{'asc' if self.ascending else 'desc'}"


@dataclass(frozen=True)
class AuthUser:
    """Identity returned by sign-in / sign-up."""

    id: str
    email: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    access_token: str | None = field(default=None, repr=False)


class IdentityGateway(Protocol):
    async def sign_in(self, email: str, password: str) -> AuthUser: ...

    async def sign_up(
        self, email: str, password: str, attributes: Mapping[str, Any]
    ) -> AuthUser: ...

    async def sign_out(self) -> None: ...


class DataGateway(Protocol):
    async def query(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order: OrderBy | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, table: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    async def delete(self, table: str, record_id: str) -> None: ...


class BlobStorageGateway(Protocol):
    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str: ...

    def public_url(self, bucket: str, key: str) -> str: ...


class SessionStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class AccessTokenAware(Protocol):
    def set_access_token(self, token: str | None) -> None: ...
