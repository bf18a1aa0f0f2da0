"""Optimistic mutation reconciler.

Each user-initiated mutation runs through a small state machine::

    idle -> mutating -> confirmed | rolled_back | discarded

The local effect is applied before the gateway call; the gateway result
either confirms it (temporary id swapped for the permanent one, server
fields merged) or rolls it back (created record removed, updated or
deleted record restored). Every mutation reaches exactly one terminal
state. ``discarded`` means the owning store was closed while the call was
in flight and nothing was written.

All mutations run on one event loop. Several may be in flight at once;
each carries its own temporary id, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from optisync.errors import GatewayError, NotFoundError, ValidationError, user_message
from optisync.gateways.base import DataGateway, OrderBy
from optisync.ids import TempIdGenerator, UuidTempIdGenerator
from optisync.local_store import LocalStore
from optisync.records import EntityKind, Record, RecordStatus
from optisync.result import Err
from optisync.schemas import parse_row, parse_rows, validate_payload
from optisync.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

Prepare = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(str, Enum):
    IDLE = "idle"
    MUTATING = "mutating"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    DISCARDED = "discarded"


_TERMINAL_STATES = frozenset(
    {MutationState.CONFIRMED, MutationState.ROLLED_BACK, MutationState.DISCARDED}
)


@dataclass(frozen=True)
class MutationDescriptor:
    kind: MutationKind
    entity: EntityKind
    payload: Mapping[str, Any] = field(default_factory=dict)
    record_id: str | None = None


@dataclass
class MutationOutcome:
    mutation_id: str
    descriptor: MutationDescriptor
    state: MutationState = MutationState.IDLE
    record: Record | None = None
    error: GatewayError | None = None
    message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state is MutationState.CONFIRMED

    def transition(self, state: MutationState) -> None:
        if self.state is MutationState.IDLE and state is MutationState.MUTATING:
            self.state = state
            return
        if self.state is MutationState.MUTATING and state in _TERMINAL_STATES:
            self.state = state
            return
        raise RuntimeError(
            f"Illegal mutation transition {self.state.value} -> {state.value} "
            f"({self.mutation_id})"
        )


class Notifier(Protocol):
    def notify_failure(
        self, error: GatewayError, descriptor: MutationDescriptor | None = None
    ) -> None: ...


def _as_gateway_error(exc: BaseException) -> GatewayError:
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return GatewayError(str(exc) or "Gateway call timed out", "timeout")
    return GatewayError(str(exc) or exc.__class__.__name__, "network")


class MutationReconciler:
    """Coordinates optimistic apply / confirm-or-rollback for one store."""

    def __init__(
        self,
        store: LocalStore,
        gateway: DataGateway,
        *,
        id_generator: TempIdGenerator | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self._gateway = gateway
        self._ids = id_generator or UuidTempIdGenerator()
        self._notifier = notifier
        self._clock = clock
        self._in_flight: dict[str, MutationOutcome] = {}
        self._pending_deletes: set[str] = set()

    @property
    def entity(self) -> EntityKind:
        return self.store.kind

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def apply(self, descriptor: MutationDescriptor) -> MutationOutcome:
        if descriptor.entity != self.entity:
            raise ValidationError(
                f"{descriptor.entity.name} mutation sent to {self.entity.name} store"
            )
        if descriptor.kind is MutationKind.CREATE:
            return await self.create(descriptor.payload)
        if descriptor.record_id is None:
            raise ValidationError(f"{descriptor.kind.value} requires a record id")
        if descriptor.kind is MutationKind.UPDATE:
            return await self.update(descriptor.record_id, descriptor.payload)
        return await self.delete(descriptor.record_id)

    async def create(
        self,
        payload: Mapping[str, Any],
        *,
        prepare: Prepare | None = None,
    ) -> MutationOutcome:
        """Insert optimistically, then commit.

        ``prepare`` runs inside the round trip (after the optimistic insert)
        and may rewrite the row, e.g. to attach an uploaded blob key. Its
        failures roll back like gateway failures.
        """
        draft = validate_payload(self.entity, payload)
        self._ensure_open()

        temp_id = self._ids.new_id()
        now = self._clock()
        local = dict(draft)
        local.setdefault("created_at", now)
        if self.entity.tracks_updates:
            local.setdefault("updated_at", now)
        descriptor = MutationDescriptor(MutationKind.CREATE, self.entity, draft)
        outcome = self._begin(temp_id, descriptor)

        self.store.insert(
            Record(
                id=temp_id,
                kind=self.entity,
                payload=local,
                status=RecordStatus.PENDING,
                temporary=True,
            )
        )

        def on_success(row: Any) -> None:
            record = parse_row(self.entity, row).unwrap()
            if not self.store.replace_by_id(temp_id, record):
                logger.debug("Created %s %s no longer displayed", self.entity.name, temp_id)
            outcome.record = record

        def on_failure() -> None:
            self.store.remove_by_id(temp_id)

        return await self._run(
            outcome,
            lambda: self._commit_insert(draft, prepare),
            on_success,
            on_failure,
        )

    async def update(
        self,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        prepare: Prepare | None = None,
    ) -> MutationOutcome:
        self._ensure_open()
        existing = self.store.get(record_id)
        if existing is None:
            raise NotFoundError(f"{self.entity.name} {record_id} is not displayed")
        if existing.is_pending or existing.is_temporary:
            raise ValidationError(f"{self.entity.name} {record_id} is still being saved")
        validate_payload(self.entity, {**existing.payload, **patch})

        sent = dict(patch)
        if self.entity.tracks_updates:
            sent.setdefault("updated_at", self._clock())
        snapshot = existing.snapshot()
        descriptor = MutationDescriptor(MutationKind.UPDATE, self.entity, sent, record_id)
        outcome = self._begin(record_id, descriptor)

        tentative = Record(
            id=record_id,
            kind=self.entity,
            payload={**snapshot.payload, **sent},
            status=RecordStatus.PENDING,
        )
        self.store.replace_by_id(record_id, tentative)

        def on_success(row: Any) -> None:
            server = parse_row(self.entity, row).unwrap()
            record = Record(
                id=server.id,
                kind=self.entity,
                payload={**tentative.payload, **server.payload},
                status=RecordStatus.CONFIRMED,
            )
            self.store.replace_by_id(record_id, record)
            outcome.record = record

        def on_failure() -> None:
            self.store.replace_by_id(record_id, snapshot)

        return await self._run(
            outcome,
            lambda: self._commit_update(record_id, sent, prepare),
            on_success,
            on_failure,
        )

    async def delete(self, record_id: str) -> MutationOutcome:
        self._ensure_open()
        existing = self.store.get(record_id)
        if existing is None:
            raise NotFoundError(f"{self.entity.name} {record_id} is not displayed")
        if existing.is_pending or existing.is_temporary:
            raise ValidationError(f"{self.entity.name} {record_id} is still being saved")

        index = self.store.index_of(record_id)
        order = self.store.ids()
        descriptor = MutationDescriptor(MutationKind.DELETE, self.entity, {}, record_id)
        outcome = self._begin(record_id, descriptor)
        self.store.remove_by_id(record_id)
        original = existing
        self._pending_deletes.add(record_id)

        def on_success(_: Any) -> None:
            outcome.record = None

        def on_failure() -> None:
            self.store.restore_at(index, original, order)

        try:
            return await self._run(
                outcome,
                lambda: self._gateway.delete(self.entity.table, record_id),
                on_success,
                on_failure,
            )
        finally:
            self._pending_deletes.discard(record_id)

    def confirm(self, temp_id: str, row: Mapping[str, Any]) -> bool:
        """Apply a create confirmation. Repeating it is a no-op."""
        record = parse_row(self.entity, row).unwrap()
        if self.store.closed:
            return False
        if temp_id not in self.store:
            if record.id not in self.store:
                logger.debug("Confirmation for %s arrived after rollback", temp_id)
            return False
        return self.store.replace_by_id(temp_id, record)

    async def refresh(
        self,
        filters: Mapping[str, Any] | None = None,
    ) -> bool:
        """Reload the whole list. Pending records survive the refresh."""
        order = OrderBy(self.entity.order_field, ascending=self.entity.ascending)
        try:
            rows = await self._gateway.query(self.entity.table, filters or {}, order)
            parsed = parse_rows(self.entity, rows)
            if isinstance(parsed, Err):
                raise parsed.error
        except (GatewayError, OSError, asyncio.TimeoutError) as exc:
            error = _as_gateway_error(exc)
            logger.warning("Refresh of %s failed: %s", self.entity.table, error)
            if not self.store.closed:
                self._notify(error, None)
            return False

        if self.store.closed:
            logger.debug("Dropping %s refresh for closed store", self.entity.table)
            return False
        self.store.replace_all(r for r in parsed.value if r.id not in self._pending_deletes)
        return True

    async def _commit_insert(self, draft: dict[str, Any], prepare: Prepare | None) -> Any:
        row = await prepare(dict(draft)) if prepare is not None else draft
        return await self._gateway.insert(self.entity.table, row)

    async def _commit_update(
        self, record_id: str, patch: dict[str, Any], prepare: Prepare | None
    ) -> Any:
        sent = await prepare(dict(patch)) if prepare is not None else patch
        return await self._gateway.update(self.entity.table, record_id, sent)

    def _ensure_open(self) -> None:
        if self.store.closed:
            raise NotFoundError(f"{self.entity.name} store is closed")

    def _begin(self, mutation_id: str, descriptor: MutationDescriptor) -> MutationOutcome:
        outcome = MutationOutcome(mutation_id=mutation_id, descriptor=descriptor)
        outcome.transition(MutationState.MUTATING)
        self._in_flight[mutation_id] = outcome
        logger.debug(
            "%s %s %s started", descriptor.kind.value, self.entity.name, mutation_id
        )
        return outcome

    async def _run(
        self,
        outcome: MutationOutcome,
        call: Callable[[], Awaitable[Any]],
        on_success: Callable[[Any], None],
        on_failure: Callable[[], None],
    ) -> MutationOutcome:
        try:
            try:
                response = await call()
            except asyncio.CancelledError:
                self._roll_back(outcome, None, on_failure)
                raise
            except (GatewayError, OSError, asyncio.TimeoutError) as exc:
                self._roll_back(outcome, _as_gateway_error(exc), on_failure)
                return outcome
            except Exception:
                self._roll_back(outcome, None, on_failure)
                raise

            if self.store.closed:
                outcome.transition(MutationState.DISCARDED)
                logger.debug("Discarding result of %s for closed store", outcome.mutation_id)
                return outcome
            try:
                on_success(response)
            except GatewayError as exc:
                self._roll_back(outcome, exc, on_failure)
                return outcome
            outcome.transition(MutationState.CONFIRMED)
            logger.debug("%s confirmed", outcome.mutation_id)
            return outcome
        finally:
            self._in_flight.pop(outcome.mutation_id, None)

    def _roll_back(
        self,
        outcome: MutationOutcome,
        error: GatewayError | None,
        on_failure: Callable[[], None],
    ) -> None:
        outcome.error = error
        if self.store.closed:
            outcome.transition(MutationState.DISCARDED)
            logger.debug("Store closed; skipping rollback of %s", outcome.mutation_id)
            return
        on_failure()
        outcome.transition(MutationState.ROLLED_BACK)
        descriptor = outcome.descriptor
        if error is None:
            logger.warning(
                "%s of %s %s interrupted and rolled back",
                descriptor.kind.value,
                self.entity.name,
                outcome.mutation_id,
            )
            return
        outcome.message = user_message(error)
        logger.warning(
            "%s of %s %s rolled back: %s (%s)",
            descriptor.kind.value,
            self.entity.name,
            outcome.mutation_id,
            error,
            error.code,
        )
        self._notify(error, descriptor)

    def _notify(self, error: GatewayError, descriptor: MutationDescriptor | None) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify_failure(error, descriptor)
        except Exception:
            logger.exception("Failure notification could not be delivered")
