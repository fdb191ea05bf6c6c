# Overview: Service-layer operations for bulk stock imports; absolute sets committed in bounded chunks.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import InventoryItem, StockImportBatch
from ..models.imports import IMPORT_COMPLETED, IMPORT_FAILED, IMPORT_PARTIAL
from ..models.movements import SOURCE_CSV_IMPORT
from ..time_utils import utcnow
from ..validation import ConflictError, ValidationError
from .actor import Actor
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .import_schemas import ParsedStockImport, StockRow
from .movement_service import AuditLogWriteFailure, NewMovement, new_movement, record_movements
from .stock_service import set_absolute_stock
"""
Import semantics:
- Every row is an absolute set: stock becomes the given value.
- Rows are applied in chunks of STOCK_IMPORT_CHUNK_SIZE. Each chunk is one
  transaction. A chunk that fails is rolled back on its own; earlier chunks
  stay committed and later chunks still run.
- A movement is written per changed item for the net signed change, after its
  chunk commits. Unchanged rows write nothing.
"""

logger = logging.getLogger(__name__)


class PartialImportFailure(Exception):
    """Some chunks or rows of an import were not applied."""

    def __init__(self, result: "StockImportResult"):
        super().__init__(
            f"stock import applied {result.succeeded_rows} row(s); {result.failed_rows} row(s) failed"
        )
        self.result = result


@dataclass
class ChunkOutcome:
    index: int
    size: int
    committed: bool
    succeeded: int = 0
    unchanged: int = 0
    failed: int = 0
    unknown_item_ids: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "size": self.size,
            "committed": self.committed,
            "succeeded": self.succeeded,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "unknown_item_ids": self.unknown_item_ids,
            "error": self.error,
        }


@dataclass
class StockImportResult:
    batch_id: int | None
    status: str
    total_rows: int
    succeeded_rows: int
    failed_rows: int
    skipped_rows: int
    unchanged_rows: int
    chunks: list[ChunkOutcome]
    skipped: list[dict] = field(default_factory=list)
    audit_failures: list[AuditLogWriteFailure] = field(default_factory=list)

    @property
    def chunks_attempted(self) -> int:
        return len(self.chunks)

    @property
    def warnings(self) -> list[dict]:
        return [f.to_dict() for f in self.audit_failures]

    def raise_for_failures(self) -> None:
        if self.failed_rows:
            raise PartialImportFailure(self)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total_rows": self.total_rows,
            "succeeded_rows": self.succeeded_rows,
            "failed_rows": self.failed_rows,
            "skipped_rows": self.skipped_rows,
            "unchanged_rows": self.unchanged_rows,
            "chunks_attempted": self.chunks_attempted,
            "chunks": [c.to_dict() for c in self.chunks],
            "skipped": self.skipped,
            "warnings": self.warnings,
        }


@dataclass
class _AppliedChunk:
    changes: list[tuple[str, str, int]]
    unchanged: int
    unknown_item_ids: list[str]


def _commit_chunk(rows: list[StockRow], now: datetime) -> _AppliedChunk:
    """Apply one chunk as a single transaction. Raises to have the whole chunk rolled back."""
    begin_write_transaction()
    ids = list(dict.fromkeys(r.item_id for r in rows))
    items = {
        item.id: item
        for item in lock_for_update(
            db.session.query(InventoryItem).filter(InventoryItem.id.in_(ids)).populate_existing()
        ).all()
    }

    # item_id -> (name, net delta), first-seen order
    net: dict[str, list] = {}
    unchanged = 0
    unknown: list[str] = []
    for row in rows:
        item = items.get(row.item_id)
        if item is None:
            unknown.append(row.item_id)
            continue
        delta = set_absolute_stock(item, row.stock, now=now)
        if delta == 0:
            unchanged += 1
        entry = net.setdefault(item.id, [item.name, 0])
        entry[1] += delta

    db.session.commit()
    changes = [(item_id, name, delta) for item_id, (name, delta) in net.items() if delta]
    return _AppliedChunk(changes=changes, unchanged=unchanged, unknown_item_ids=unknown)


def _chunked(rows: list[StockRow], size: int):
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _status_for(succeeded: int, failed: int) -> str:
    if not failed:
        return IMPORT_COMPLETED
    if not succeeded:
        return IMPORT_FAILED
    return IMPORT_PARTIAL


def import_stock_levels(
    parsed: ParsedStockImport,
    actor: Actor,
    *,
    chunk_size: int | None = None,
    source_file_name: str | None = None,
) -> StockImportResult:
    """
    Apply an import's absolute stock levels chunk by chunk.

    Never raises for a failed chunk; the result carries succeeded/failed
    counts and per-chunk outcomes. Call raise_for_failures() to turn a partial
    outcome into PartialImportFailure.
    """
    if chunk_size is None:
        chunk_size = current_app.config.get("STOCK_IMPORT_CHUNK_SIZE", 500)
    if chunk_size < 1:
        raise ValidationError("chunk_size must be >= 1")

    started_at = utcnow()
    reason = f"Stock import: {source_file_name}" if source_file_name else "Stock import"

    outcomes: list[ChunkOutcome] = []
    audit_failures: list[AuditLogWriteFailure] = []
    succeeded = failed = unchanged = 0

    for index, chunk in enumerate(_chunked(parsed.rows, chunk_size), start=1):
        outcome = ChunkOutcome(index=index, size=len(chunk), committed=False)
        outcomes.append(outcome)
        try:
            applied = run_with_retry(lambda chunk=chunk: _commit_chunk(chunk, utcnow()))
        except (SQLAlchemyError, ConflictError) as exc:
            outcome.failed = len(chunk)
            outcome.error = str(exc)
            failed += len(chunk)
            logger.error("stock import chunk %d (%d rows) rolled back: %s", index, len(chunk), exc)
            continue

        outcome.committed = True
        outcome.unknown_item_ids = applied.unknown_item_ids
        outcome.failed = len(applied.unknown_item_ids)
        outcome.succeeded = len(chunk) - outcome.failed
        outcome.unchanged = applied.unchanged
        succeeded += outcome.succeeded
        failed += outcome.failed
        unchanged += applied.unchanged

        movements: list[NewMovement] = []
        for item_id, name, delta in applied.changes:
            movement = new_movement(
                item_id=item_id,
                item_name=name,
                quantity_delta=delta,
                source=SOURCE_CSV_IMPORT,
                actor=actor,
                reason=reason,
            )
            if movement is not None:
                movements.append(movement)
        if movements:
            try:
                record_movements(movements, reference=f"stock import chunk {index}")
            except AuditLogWriteFailure as exc:
                audit_failures.append(exc)

    status = _status_for(succeeded, failed)
    if failed:
        logger.warning(
            "stock import by %s finished %s: %d succeeded, %d failed, %d skipped",
            actor.user_id, status, succeeded, failed, len(parsed.skipped),
        )

    def _save() -> StockImportBatch:
        batch = StockImportBatch(
            source=parsed.source,
            source_file_name=source_file_name,
            status=status,
            chunk_size=chunk_size,
            total_rows=parsed.total_rows,
            succeeded_rows=succeeded,
            failed_rows=failed,
            skipped_rows=len(parsed.skipped),
            unchanged_rows=unchanged,
            chunk_outcomes=[o.to_dict() for o in outcomes],
            created_by_user_id=actor.user_id,
            created_by_user_name=actor.display_name,
            started_at=started_at,
            completed_at=utcnow(),
        )
        db.session.add(batch)
        db.session.commit()
        return batch

    batch = run_with_retry(_save)

    return StockImportResult(
        batch_id=batch.id,
        status=status,
        total_rows=parsed.total_rows,
        succeeded_rows=succeeded,
        failed_rows=failed,
        skipped_rows=len(parsed.skipped),
        unchanged_rows=unchanged,
        chunks=outcomes,
        skipped=parsed.skipped,
        audit_failures=audit_failures,
    )


def get_import_batch(batch_id: int) -> StockImportBatch | None:
    return db.session.get(StockImportBatch, batch_id)
