"""In-memory ordered record store owned by a single screen."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence

from optisync.errors import NotFoundError
from optisync.records import EntityKind, Record

logger = logging.getLogger(__name__)

Listener = Callable[["LocalStore"], None]


class LocalStore:
    """Ordered records for one entity kind.

    Descending kinds (feeds) take new records at the top, ascending kinds
    (threads) append them. Every mutation notifies subscribers. After
    ``close()`` all mutating calls raise ``NotFoundError`` so that late
    gateway results cannot write into a torn-down screen.
    """

    def __init__(self, kind: EntityKind, records: Iterable[Record] = ()) -> None:
        self.kind = kind
        self._records: list[Record] = []
        self._listeners: list[Listener] = []
        self._closed = False
        for record in records:
            if self._index_of(record.id) is not None:
                raise ValueError(f"Duplicate {kind.name} id: {record.id}")
            self._records.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(tuple(self._records))

    def __contains__(self, record_id: object) -> bool:
        return isinstance(record_id, str) and self._index_of(record_id) is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def records(self) -> tuple[Record, ...]:
        return tuple(self._records)

    def ids(self) -> list[str]:
        return [record.id for record in self._records]

    def get(self, record_id: str) -> Record | None:
        index = self._index_of(record_id)
        return None if index is None else self._records[index]

    def index_of(self, record_id: str) -> int | None:
        return self._index_of(record_id)

    def insert(self, record: Record) -> None:
        self._ensure_open()
        if self._index_of(record.id) is not None:
            raise ValueError(f"Duplicate {self.kind.name} id: {record.id}")
        if self.kind.ascending:
            self._records.append(record)
        else:
            self._records.insert(0, record)
        self._changed()

    def replace_by_id(self, record_id: str, new_record: Record) -> bool:
        """Swap a record in place. No-op when ``record_id`` is gone."""
        self._ensure_open()
        index = self._index_of(record_id)
        if index is None:
            logger.debug("replace_by_id: %s %s not present", self.kind.name, record_id)
            return False
        if new_record.id != record_id:
            duplicate = self._index_of(new_record.id)
            if duplicate is not None:
                del self._records[duplicate]
                if duplicate < index:
                    index -= 1
        self._records[index] = new_record
        self._changed()
        return True

    def remove_by_id(self, record_id: str) -> tuple[int, Record] | None:
        self._ensure_open()
        index = self._index_of(record_id)
        if index is None:
            return None
        record = self._records.pop(index)
        self._changed()
        return index, record

    def restore_at(
        self, index: int, record: Record, order: Sequence[str] = ()
    ) -> bool:
        """Put a removed record back at its former position.

        ``order`` is the id list as it was when the record was removed. The
        record goes right after its nearest earlier neighbour still present,
        else right before its nearest later one. ``index`` is only used when
        no neighbour from ``order`` is left.
        """
        self._ensure_open()
        if self._index_of(record.id) is not None:
            return False
        position = self._anchored_position(record.id, order)
        if position is None:
            position = max(0, min(index, len(self._records)))
        self._records.insert(position, record)
        self._changed()
        return True

    def replace_all(self, records: Iterable[Record]) -> None:
        """Load a full refresh without clobbering pending records.

        A pending record with a permanent id (update in flight) keeps the
        slot of its refreshed row, or its former index when the row is
        missing. Pending records with temporary ids stay at the natural
        insertion end.
        """
        self._ensure_open()
        pending = [(i, r) for i, r in enumerate(self._records) if r.is_pending]

        merged: list[Record] = []
        seen: set[str] = set()
        for record in records:
            if record.id in seen:
                continue
            seen.add(record.id)
            merged.append(record)

        fresh_index = {record.id: i for i, record in enumerate(merged)}
        for former_index, record in pending:
            if record.is_temporary:
                continue
            slot = fresh_index.get(record.id)
            if slot is not None:
                merged[slot] = record
            else:
                merged.insert(min(former_index, len(merged)), record)
                fresh_index = {r.id: i for i, r in enumerate(merged)}

        temporary = [r for _, r in pending if r.is_temporary]
        if self.kind.ascending:
            merged.extend(temporary)
        else:
            merged[0:0] = temporary

        self._records = merged
        self._changed()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()

    def _ensure_open(self) -> None:
        if self._closed:
            raise NotFoundError(f"{self.kind.name} store is closed")

    def _anchored_position(self, record_id: str, order: Sequence[str]) -> int | None:
        order = list(order)
        if record_id not in order:
            return None
        at = order.index(record_id)
        for neighbour in reversed(order[:at]):
            index = self._index_of(neighbour)
            if index is not None:
                return index + 1
        for neighbour in order[at + 1 :]:
            index = self._index_of(neighbour)
            if index is not None:
                return index
        return None

    def _index_of(self, record_id: str) -> int | None:
        for index, record in enumerate(self._records):
            if record.id == record_id:
                return index
        return None

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed for %s", self.kind.name)
