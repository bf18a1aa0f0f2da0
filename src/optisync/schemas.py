"""Validation of local payloads and gateway rows."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from optisync.errors import GatewayError, ValidationError
from optisync.records import EntityKind, Record, RecordStatus
from optisync.result import Err, Ok, Result

logger = logging.getLogger(__name__)


def _describe(exc: PydanticValidationError) -> tuple[str, str | None]:
    errors = exc.errors()
    if not errors:
        return str(exc), None
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return (f"{loc}: {message}" if loc else message), (loc or None)


def validate_payload(kind: EntityKind, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Check a local payload before any optimistic effect is applied.

    Returns the normalised draft fields. Raises ``ValidationError``.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{kind.name} payload must be an object")
    try:
        draft = kind.draft_schema.model_validate(dict(payload))
    except PydanticValidationError as exc:
        message, field = _describe(exc)
        raise ValidationError(f"Invalid {kind.name}: {message}", field=field) from exc
    return draft.model_dump()


def parse_row(kind: EntityKind, row: object) -> Result[Record, GatewayError]:
    """Turn an untyped gateway row into a confirmed ``Record``."""
    if not isinstance(row, Mapping):
        return Err(
            GatewayError(
                f"Expected a {kind.name} object, got {type(row).__name__}",
                "invalid_response",
            )
        )
    try:
        model = kind.row_schema.model_validate(dict(row))
    except PydanticValidationError as exc:
        message, _ = _describe(exc)
        logger.warning("Rejected %s row from gateway: %s", kind.name, message)
        return Err(GatewayError(f"Invalid {kind.name} row: {message}", "invalid_response"))

    data = model.model_dump()
    record_id = str(data.pop("id"))
    return Ok(Record(id=record_id, kind=kind, payload=data, status=RecordStatus.CONFIRMED))


def parse_rows(kind: EntityKind, rows: object) -> Result[list[Record], GatewayError]:
    """All-or-nothing variant of ``parse_row`` for query results."""
    if not isinstance(rows, Iterable) or isinstance(rows, (str, bytes, Mapping)):
        return Err(GatewayError(f"Expected a list of {kind.name} rows", "invalid_response"))

    records: list[Record] = []
    seen: set[str] = set()
    for row in rows:
        result = parse_row(kind, row)
        if isinstance(result, Err):
            return result
        record = result.value
        if record.id in seen:
            logger.debug("Dropping duplicate %s row %s", kind.name, record.id)
            continue
        seen.add(record.id)
        records.append(record)
    return Ok(records)
