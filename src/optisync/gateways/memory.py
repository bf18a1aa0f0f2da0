"""In-process gateways for tests and offline use."""

from __future__ import annotations

import asyncio
import copy
import itertools
import secrets
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from optisync.errors import (
    DuplicateRegistrationError,
    GatewayError,
    InvalidCredentialsError,
)
from optisync.gateways.base import AuthUser, OrderBy
from optisync.utils.time import utc_now_iso


class _FaultInjection:
    """Offline switch, queued failures and an optional gate that holds calls open."""

    def __init__(self) -> None:
        self.offline = False
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, ...]] = []
        self._failures: deque[GatewayError] = deque()

    def fail_next(self, code: str = "server", message: str | None = None) -> None:
        self._failures.append(GatewayError(message or f"Injected {code} failure", code))

    async def _enter(self, *call: str) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.offline:
            raise GatewayError("Network request failed", "network")
        if self._failures:
            raise self._failures.popleft()


class InMemoryDataGateway(_FaultInjection):
    """Table store with server-assigned ids and timestamps.

    ``acting_user`` enables the ownership rule: rows carrying a different
    ``user_email`` cannot be updated or deleted.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], str] = utc_now_iso,
        acting_user: str | None = None,
    ) -> None:
        super().__init__()
        self.acting_user = acting_user
        self._clock = clock
        self._tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._counters: dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))
        self._next_ids: deque[str] = deque()

    def seed(self, table: str, rows: list[Mapping[str, Any]]) -> None:
        self._tables[table].extend(dict(row) for row in rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._tables[table])

    def assign_next_id(self, record_id: str) -> None:
        self._next_ids.append(record_id)

    async def query(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order: OrderBy | None = None,
    ) -> list[dict[str, Any]]:
        await self._enter("query", table)
        rows = [
            row
            for row in self._tables[table]
            if all(str(row.get(k)) == str(v) for k, v in (filters or {}).items())
        ]
        if order is not None:
            rows = sorted(
                rows,
                key=lambda row: str(row.get(order.field) or ""),
                reverse=not order.ascending,
            )
        return copy.deepcopy(rows)

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        await self._enter("insert", table)
        now = self._clock()
        stored = dict(row)
        stored["id"] = self._next_ids.popleft() if self._next_ids else self._new_id(table)
        stored.setdefault("created_at", now)
        stored.setdefault("updated_at", now)
        self._tables[table].append(stored)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        await self._enter("update", table, record_id)
        row = self._find(table, record_id)
        if row is None:
            raise GatewayError(f"No {table} row with id {record_id}", "not_found", 404)
        self._check_owner(row)
        row.update(patch)
        row["updated_at"] = patch.get("updated_at") or self._clock()
        return copy.deepcopy(row)

    async def delete(self, table: str, record_id: str) -> None:
        await self._enter("delete", table, record_id)
        row = self._find(table, record_id)
        if row is None:
            raise GatewayError(f"No {table} row with id {record_id}", "not_found", 404)
        self._check_owner(row)
        self._tables[table].remove(row)

    def _new_id(self, table: str) -> str:
        prefix = table.rsplit("_", 1)[-1][:1] or "r"
        return f"{prefix}-{next(self._counters[table])}"

    def _find(self, table: str, record_id: str) -> dict[str, Any] | None:
        for row in self._tables[table]:
            if str(row.get("id")) == record_id:
                return row
        return None

    def _check_owner(self, row: Mapping[str, Any]) -> None:
        owner = row.get("user_email")
        if self.acting_user is not None and owner is not None and owner != self.acting_user:
            raise GatewayError("Row belongs to another user", "forbidden", 403)


class InMemoryIdentityGateway(_FaultInjection):
    def __init__(self) -> None:
        super().__init__()
        self._users: dict[str, tuple[str, AuthUser]] = {}
        self.current: AuthUser | None = None

    async def sign_in(self, email: str, password: str) -> AuthUser:
        await self._enter("sign_in", email)
        entry = self._users.get(email.lower())
        if entry is None or entry[0] != password:
            raise InvalidCredentialsError()
        user = AuthUser(
            id=entry[1].id,
            email=entry[1].email,
            attributes=dict(entry[1].attributes),
            access_token=secrets.token_hex(16),
        )
        self.current = user
        return user

    async def sign_up(
        self, email: str, password: str, attributes: Mapping[str, Any]
    ) -> AuthUser:
        await self._enter("sign_up", email)
        if email.lower() in self._users:
            raise DuplicateRegistrationError()
        user = AuthUser(
            id=str(uuid4()),
            email=email,
            attributes=dict(attributes),
            access_token=secrets.token_hex(16),
        )
        self._users[email.lower()] = (password, user)
        self.current = user
        return user

    async def sign_out(self) -> None:
        await self._enter("sign_out")
        self.current = None


class InMemoryBlobStorage(_FaultInjection):
    def __init__(self, base_url: str = "memory://storage") -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        await self._enter("upload", bucket, key)
        if (bucket, key) in self.objects:
            raise GatewayError(f"Object {bucket}/{key} already exists", "conflict", 409)
        self.objects[(bucket, key)] = (bytes(data), content_type)
        return key

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/{bucket}/{key}"
