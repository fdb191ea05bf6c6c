from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

IMPORT_COMPLETED = "COMPLETED"
IMPORT_PARTIAL = "PARTIAL"
IMPORT_FAILED = "FAILED"


class StockImportBatch(db.Model):
    """
    Outcome of one bulk absolute-stock import.

    Chunks commit independently, so a batch can end PARTIAL: some chunks
    applied, some rolled back. The counts here are what the operator is shown.
    """
    __tablename__ = "stock_import_batches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(16), nullable=False)
    source_file_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, index=True)

    chunk_size = db.Column(db.Integer, nullable=False)
    total_rows = db.Column(db.Integer, nullable=False, default=0)
    succeeded_rows = db.Column(db.Integer, nullable=False, default=0)
    failed_rows = db.Column(db.Integer, nullable=False, default=0)
    skipped_rows = db.Column(db.Integer, nullable=False, default=0)
    unchanged_rows = db.Column(db.Integer, nullable=False, default=0)

    # [{"index", "size", "committed", "error"}]
    chunk_outcomes = db.Column(db.JSON, nullable=False, default=list)

    created_by_user_id = db.Column(db.String(128), nullable=True)
    created_by_user_name = db.Column(db.String(255), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "source_file_name": self.source_file_name,
            "status": self.status,
            "chunk_size": self.chunk_size,
            "total_rows": self.total_rows,
            "succeeded_rows": self.succeeded_rows,
            "failed_rows": self.failed_rows,
            "skipped_rows": self.skipped_rows,
            "unchanged_rows": self.unchanged_rows,
            "chunk_outcomes": list(self.chunk_outcomes or []),
            "created_by_user_id": self.created_by_user_id,
            "created_by_user_name": self.created_by_user_name,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }
