from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from optisync.errors import GatewayError, NotFoundError, ValidationError
from optisync.local_store import LocalStore
from optisync.reconciler import (
    MutationDescriptor,
    MutationKind,
    MutationOutcome,
    MutationReconciler,
    MutationState,
)
from optisync.records import COMMENTS, DRAWINGS, POSTS, RecordStatus


def _post_payload(content: str = "hello", email: str = "alice@example.com") -> dict:
    return {"user_email": email, "username": email.split("@")[0], "content": content}


def _post_row(record_id: str, created_at: str, content: str | None = None) -> dict:
    return {
        "id": record_id,
        "user_email": "alice@example.com",
        "username": "alice",
        "content": content or f"post {record_id}",
        "image_url": None,
        "created_at": created_at,
        "updated_at": created_at,
    }


async def _until(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class _HeldGateway:
    """Holds update/delete calls per record id until released."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self._gates: dict[str, asyncio.Event] = {}
        self._errors: dict[str, GatewayError] = {}
        self.waiting: set[str] = set()

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def hold(self, *record_ids: str) -> None:
        for record_id in record_ids:
            self._gates[record_id] = asyncio.Event()

    def release(self, record_id: str, error: GatewayError | None = None) -> None:
        if error is not None:
            self._errors[record_id] = error
        self._gates[record_id].set()

    async def _wait(self, record_id: str) -> None:
        gate = self._gates.get(record_id)
        if gate is None:
            return
        self.waiting.add(record_id)
        await gate.wait()
        self.waiting.discard(record_id)
        error = self._errors.pop(record_id, None)
        if error is not None:
            raise error

    async def update(self, table: str, record_id: str, patch: dict) -> dict:
        await self._wait(record_id)
        return await self._inner.update(table, record_id, patch)

    async def delete(self, table: str, record_id: str) -> None:
        await self._wait(record_id)
        await self._inner.delete(table, record_id)


@pytest.fixture
def posts(data, ids, notifications, clock) -> MutationReconciler:
    return MutationReconciler(
        LocalStore(POSTS), data, id_generator=ids, notifier=notifications, clock=clock
    )


@pytest_asyncio.fixture
async def three_posts(data, posts) -> MutationReconciler:
    data.seed(
        POSTS.table,
        [
            _post_row("P0", "2024-01-01T00:00:00+00:00"),
            _post_row("P1", "2024-01-02T00:00:00+00:00"),
            _post_row("P2", "2024-01-03T00:00:00+00:00"),
        ],
    )
    assert await posts.refresh() is True
    return posts


@pytest.fixture
def held(data) -> _HeldGateway:
    return _HeldGateway(data)


@pytest_asyncio.fixture
async def held_posts(held, three_posts, ids, notifications, clock) -> MutationReconciler:
    reconciler = MutationReconciler(
        LocalStore(POSTS), held, id_generator=ids, notifier=notifications, clock=clock
    )
    assert await reconciler.refresh() is True
    return reconciler


def _offline() -> GatewayError:
    return GatewayError("Network request failed", "network")


@pytest.mark.asyncio
async def test_create_confirms_with_permanent_id(data, posts) -> None:
    gate = asyncio.Event()
    data.gate = gate

    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)

    (pending,) = posts.store.records()
    assert pending.id == "temp-1"
    assert pending.status is RecordStatus.PENDING
    assert pending.is_temporary
    assert posts.in_flight == 1

    gate.set()
    outcome = await task

    assert outcome.state is MutationState.CONFIRMED
    assert outcome.succeeded
    assert posts.store.ids() == ["p-1"]
    assert posts.store.get("p-1").status is RecordStatus.CONFIRMED
    assert "temp-1" not in posts.store
    assert posts.in_flight == 0


@pytest.mark.asyncio
async def test_offline_create_is_rolled_back(data, posts, notifications) -> None:
    data.offline = True

    outcome = await posts.create(_post_payload("hello"))

    assert outcome.state is MutationState.ROLLED_BACK
    assert outcome.error is not None and outcome.error.code == "network"
    assert not [r for r in posts.store if r.payload.get("content") == "hello"]
    assert len(posts.store) == 0
    (note,) = notifications.active()
    assert note.title == "Could not create post"
    assert "offline" in note.message


@pytest.mark.asyncio
async def test_comment_confirmed_with_server_id(data, ids, notifications) -> None:
    comments = MutationReconciler(
        LocalStore(COMMENTS), data, id_generator=ids, notifier=notifications
    )
    data.assign_next_id("c-42")

    outcome = await comments.create(
        {"post_id": "P1", "user_email": "a@example.com", "username": "a", "content": "nice!"}
    )

    assert outcome.succeeded
    (comment,) = comments.store.records()
    assert comment.id == "c-42"
    assert comment.status is RecordStatus.CONFIRMED
    assert comment.payload["post_id"] == "P1"


@pytest.mark.asyncio
async def test_failed_delete_restores_original_position(data, three_posts) -> None:
    store = three_posts.store
    before = [(r.id, dict(r.payload)) for r in store]
    assert store.ids() == ["P2", "P1", "P0"]
    data.fail_next("network")

    outcome = await three_posts.delete("P1")

    assert outcome.state is MutationState.ROLLED_BACK
    assert [(r.id, dict(r.payload)) for r in store] == before


@pytest.mark.asyncio
async def test_delete_success_removes_record(data, three_posts) -> None:
    outcome = await three_posts.delete("P1")

    assert outcome.succeeded
    assert three_posts.store.ids() == ["P2", "P0"]
    assert [row["id"] for row in data.rows(POSTS.table)] == ["P0", "P2"]


@pytest.mark.asyncio
async def test_invalid_payload_never_touches_store(data, posts) -> None:
    changes: list[int] = []
    posts.store.subscribe(lambda s: changes.append(len(s)))

    with pytest.raises(ValidationError):
        await posts.create(_post_payload("   "))

    assert len(posts.store) == 0
    assert changes == []
    assert data.calls == []


@pytest.mark.asyncio
async def test_update_merges_server_fields(data, three_posts) -> None:
    outcome = await three_posts.update("P1", {"content": "edited"})

    assert outcome.succeeded
    record = three_posts.store.get("P1")
    assert record.payload["content"] == "edited"
    assert record.status is RecordStatus.CONFIRMED
    assert three_posts.store.ids() == ["P2", "P1", "P0"]
    assert data.rows(POSTS.table)[1]["content"] == "edited"


@pytest.mark.asyncio
async def test_failed_update_restores_snapshot(data, three_posts) -> None:
    before = three_posts.store.get("P1").snapshot()
    data.fail_next("server")

    outcome = await three_posts.update("P1", {"content": "edited"})

    assert outcome.state is MutationState.ROLLED_BACK
    after = three_posts.store.get("P1")
    assert after.payload == before.payload
    assert after.status is RecordStatus.CONFIRMED


@pytest.mark.asyncio
async def test_update_rejected_for_non_owner(data, three_posts, notifications) -> None:
    data.acting_user = "bob@example.com"

    outcome = await three_posts.update("P1", {"content": "mine now"})

    assert outcome.state is MutationState.ROLLED_BACK
    assert outcome.error.code == "forbidden"
    assert outcome.message == "You are not allowed to change this item."
    assert three_posts.store.get("P1").payload["content"] == "post P1"
    assert notifications.active()[-1].title == "Could not update post"


@pytest.mark.asyncio
async def test_update_and_delete_of_unknown_record(three_posts) -> None:
    with pytest.raises(NotFoundError):
        await three_posts.update("missing", {"content": "x"})
    with pytest.raises(NotFoundError):
        await three_posts.delete("missing")


@pytest.mark.asyncio
async def test_update_of_pending_record_rejected(data, posts) -> None:
    gate = asyncio.Event()
    data.gate = gate
    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)

    with pytest.raises(ValidationError, match="still being saved"):
        await posts.update("temp-1", {"content": "again"})
    with pytest.raises(ValidationError, match="still being saved"):
        await posts.delete("temp-1")

    gate.set()
    assert (await task).succeeded


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_idempotent(data, posts) -> None:
    gate = asyncio.Event()
    data.gate = gate
    data.assign_next_id("p-9")
    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)

    row = _post_row("p-9", "2024-01-05T00:00:00+00:00", content="hello")
    assert posts.confirm("temp-1", row) is True
    assert posts.confirm("temp-1", row) is False

    gate.set()
    outcome = await task

    assert outcome.succeeded
    assert posts.store.ids() == ["p-9"]


@pytest.mark.asyncio
async def test_result_discarded_after_store_closed(data, posts, notifications) -> None:
    gate = asyncio.Event()
    data.gate = gate
    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)

    posts.store.close()
    gate.set()
    outcome = await task

    assert outcome.state is MutationState.DISCARDED
    assert notifications.active() == []


@pytest.mark.asyncio
async def test_failure_after_store_closed_is_discarded(data, posts, notifications) -> None:
    gate = asyncio.Event()
    data.gate = gate
    data.offline = True
    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)

    posts.store.close()
    gate.set()
    outcome = await task

    assert outcome.state is MutationState.DISCARDED
    assert notifications.active() == []


@pytest.mark.asyncio
async def test_create_on_closed_store_rejected(posts) -> None:
    posts.store.close()
    with pytest.raises(NotFoundError, match="closed"):
        await posts.create(_post_payload())


@pytest.mark.asyncio
async def test_cancelled_create_rolls_back(data, posts) -> None:
    data.gate = asyncio.Event()
    task = asyncio.create_task(posts.create(_post_payload()))
    await _until(lambda: data.calls)
    assert len(posts.store) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(posts.store) == 0
    assert posts.in_flight == 0


@pytest.mark.asyncio
async def test_concurrent_creates_reconcile_independently(data, posts) -> None:
    gate = asyncio.Event()
    data.gate = gate
    first = asyncio.create_task(posts.create(_post_payload("one")))
    second = asyncio.create_task(posts.create(_post_payload("two")))
    await _until(lambda: len(data.calls) == 2)

    assert posts.store.ids() == ["temp-2", "temp-1"]
    assert posts.in_flight == 2

    gate.set()
    outcomes = await asyncio.gather(first, second)

    assert all(outcome.succeeded for outcome in outcomes)
    assert sorted(posts.store.ids()) == ["p-1", "p-2"]
    contents = {r.id: r.payload["content"] for r in posts.store}
    assert contents == {
        outcomes[0].record.id: "one",
        outcomes[1].record.id: "two",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("first", ["P0", "P2"])
async def test_concurrent_failed_deletes_restore_original_order(held, held_posts, first) -> None:
    store = held_posts.store
    held.hold("P0", "P2")
    tasks = {
        record_id: asyncio.create_task(held_posts.delete(record_id))
        for record_id in ("P0", "P2")
    }
    await _until(lambda: held.waiting == {"P0", "P2"})
    assert store.ids() == ["P1"]

    second = "P2" if first == "P0" else "P0"
    held.release(first, _offline())
    assert (await tasks[first]).state is MutationState.ROLLED_BACK
    held.release(second, _offline())
    assert (await tasks[second]).state is MutationState.ROLLED_BACK

    assert store.ids() == ["P2", "P1", "P0"]
    assert held_posts.in_flight == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("failed_first", [True, False])
async def test_concurrent_deletes_with_mixed_results(
    data, held, held_posts, failed_first
) -> None:
    store = held_posts.store
    held.hold("P1", "P2")
    kept = asyncio.create_task(held_posts.delete("P2"))
    removed = asyncio.create_task(held_posts.delete("P1"))
    await _until(lambda: held.waiting == {"P1", "P2"})

    if failed_first:
        held.release("P2", _offline())
        await kept
        held.release("P1")
        await removed
    else:
        held.release("P1")
        await removed
        held.release("P2", _offline())
        await kept

    assert kept.result().state is MutationState.ROLLED_BACK
    assert removed.result().succeeded
    assert store.ids() == ["P2", "P0"]
    assert [row["id"] for row in data.rows(POSTS.table)] == ["P0", "P2"]


@pytest.mark.asyncio
@pytest.mark.parametrize("update_first", [True, False])
async def test_concurrent_update_and_delete_both_fail(held, held_posts, update_first) -> None:
    store = held_posts.store
    before = [(r.id, dict(r.payload)) for r in store]
    held.hold("P1", "P2")
    update = asyncio.create_task(held_posts.update("P1", {"content": "edited"}))
    delete = asyncio.create_task(held_posts.delete("P2"))
    await _until(lambda: held.waiting == {"P1", "P2"})
    assert store.ids() == ["P1", "P0"]
    assert store.get("P1").is_pending

    order = [("P1", update), ("P2", delete)]
    if not update_first:
        order.reverse()
    for record_id, task in order:
        held.release(record_id, _offline())
        assert (await task).state is MutationState.ROLLED_BACK

    assert [(r.id, dict(r.payload)) for r in store] == before
    assert not any(r.is_pending for r in store)


@pytest.mark.asyncio
async def test_update_and_delete_on_closed_store_rejected(data, three_posts) -> None:
    three_posts.store.close()

    with pytest.raises(NotFoundError, match="closed"):
        await three_posts.update("P1", {"content": "late"})
    with pytest.raises(NotFoundError, match="closed"):
        await three_posts.delete("P1")

    assert three_posts.in_flight == 0
    assert all(call[0] == "query" for call in data.calls)


@pytest.mark.asyncio
async def test_refresh_does_not_clobber_pending_records(data, three_posts) -> None:
    gate = asyncio.Event()
    data.gate = gate
    create = asyncio.create_task(three_posts.create(_post_payload("fresh")))
    delete = asyncio.create_task(three_posts.delete("P0"))
    await _until(lambda: len(data.calls) == 3)
    data.gate = None

    assert await three_posts.refresh() is True
    assert three_posts.store.ids() == ["temp-1", "P2", "P1"]

    gate.set()
    await asyncio.gather(create, delete)

    assert three_posts.store.ids() == ["p-1", "P2", "P1"]


@pytest.mark.asyncio
async def test_refresh_failure_keeps_store_and_notifies(data, three_posts, notifications) -> None:
    data.offline = True

    assert await three_posts.refresh() is False

    assert three_posts.store.ids() == ["P2", "P1", "P0"]
    assert notifications.active()[-1].title == "Could not load"


@pytest.mark.asyncio
async def test_refresh_rejects_malformed_rows(data, three_posts) -> None:
    data.seed(POSTS.table, [{"id": "bad"}])

    assert await three_posts.refresh() is False

    assert three_posts.store.ids() == ["P2", "P1", "P0"]


@pytest.mark.asyncio
async def test_refresh_after_close_returns_false(three_posts) -> None:
    three_posts.store.close()
    assert await three_posts.refresh() is False


@pytest.mark.asyncio
async def test_prepare_failure_rolls_back(data, posts) -> None:
    async def failing_upload(row: dict) -> dict:
        raise GatewayError("upload rejected", "conflict", 409)

    outcome = await posts.create(_post_payload(), prepare=failing_upload)

    assert outcome.state is MutationState.ROLLED_BACK
    assert outcome.error.code == "conflict"
    assert len(posts.store) == 0
    assert data.calls == []


@pytest.mark.asyncio
async def test_unexpected_error_rolls_back_and_propagates(posts) -> None:
    async def broken(row: dict) -> dict:
        raise KeyError("oops")

    with pytest.raises(KeyError):
        await posts.create(_post_payload(), prepare=broken)

    assert len(posts.store) == 0
    assert posts.in_flight == 0


@pytest.mark.asyncio
async def test_invalid_confirmation_row_rolls_back(data, posts) -> None:
    async def bad_insert(table: str, row: dict) -> dict:
        return {"id": "p-1"}

    data.insert = bad_insert

    outcome = await posts.create(_post_payload())

    assert outcome.state is MutationState.ROLLED_BACK
    assert outcome.error.code == "invalid_response"
    assert len(posts.store) == 0


@pytest.mark.asyncio
async def test_apply_dispatches_descriptors(data, three_posts) -> None:
    created = await three_posts.apply(
        MutationDescriptor(MutationKind.CREATE, POSTS, _post_payload("via descriptor"))
    )
    deleted = await three_posts.apply(
        MutationDescriptor(MutationKind.DELETE, POSTS, record_id="P2")
    )

    assert created.succeeded and deleted.succeeded
    assert "P2" not in three_posts.store

    with pytest.raises(ValidationError, match="requires a record id"):
        await three_posts.apply(MutationDescriptor(MutationKind.UPDATE, POSTS, {"content": "x"}))
    with pytest.raises(ValidationError, match="drawing mutation"):
        await three_posts.apply(MutationDescriptor(MutationKind.CREATE, DRAWINGS, {}))


def test_outcome_rejects_illegal_transitions() -> None:
    outcome = MutationOutcome("m-1", MutationDescriptor(MutationKind.CREATE, POSTS))
    outcome.transition(MutationState.MUTATING)
    outcome.transition(MutationState.CONFIRMED)

    assert outcome.terminal
    with pytest.raises(RuntimeError, match="Illegal mutation transition"):
        outcome.transition(MutationState.ROLLED_BACK)
