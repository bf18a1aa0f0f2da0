"""Temporary id generation for optimistic records."""

from __future__ import annotations

import itertools
from typing import Protocol
from uuid import uuid4

TEMP_ID_PREFIX = "temp-"


class TempIdGenerator(Protocol):
    def new_id(self) -> str: ...


class UuidTempIdGenerator:
    """Collision-resistant provisional ids (``temp-<uuid4 hex>``)."""

    def __init__(self, prefix: str = TEMP_ID_PREFIX) -> None:
        self._prefix = prefix

    def new_id(self) -> str:
        return f"{self._prefix}{uuid4().hex}"


class SequentialTempIdGenerator:
    """Deterministic provisional ids: ``temp-1``, ``temp-2``, ..."""

    def __init__(self, prefix: str = TEMP_ID_PREFIX, start: int = 1) -> None:
        self._prefix = prefix
        self._counter = itertools.count(start)

    def new_id(self) -> str:
        return f"{self._prefix}{next(self._counter)}"

