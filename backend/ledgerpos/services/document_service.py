# Overview: Service-layer operations for document numbering; allocates bill numbers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence

BILL_DOCUMENT_TYPE = "BILL"
BILL_PREFIX = "B"


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(*, document_type: str, prefix: str, pad: int = 6) -> str:
    """
    Allocate the next document number inside the caller's transaction.

    The counter row is bumped with UPDATE ... SET n = n + 1, so two writers
    never receive the same number. The number is only consumed if the caller
    commits; a rolled-back finalization leaves no gap-filling work behind.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    next_num = _bump(document_type)
    if next_num is None:
        nested = db.session.begin_nested()
        try:
            db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            db.session.flush()
            nested.commit()
            next_num = 1
        except IntegrityError:
            # Another writer created the row first
            nested.rollback()
            next_num = _bump(document_type)
            if next_num is None:
                raise DocumentSequenceError(f"could not allocate {document_type} number")

    return f"{prefix}-{next_num:0{pad}d}"


def next_bill_number() -> str:
    return next_document_number(document_type=BILL_DOCUMENT_TYPE, prefix=BILL_PREFIX)
