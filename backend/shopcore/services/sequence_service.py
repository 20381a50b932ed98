# Overview: Atomic allocation of human-readable control IDs.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import ControlSequence
from .concurrency import run_with_retry
from .errors import ValidationError

ORDER_CONTROL_PREFIX = "ORD"
RETURN_CONTROL_PREFIX = "RET"


def _current_next_number(document_type: str) -> int:
    return (
        db.session.query(ControlSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )


def next_control_id(*, document_type: str, prefix: str, pad: int = 6) -> str:
    """
    Atomically allocate the next control ID for a document type.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock; the
    first allocation inserts the row and falls back to the UPDATE if another
    transaction inserted it first.

    The allocation commits on its own, before the caller's unit of work, so a
    number handed out is never handed out again even if that unit is rolled
    back or retried. A failed checkout leaves a gap in the sequence.
    """
    if not document_type:
        raise ValidationError("document_type is required")

    stmt = (
        update(ControlSequence)
        .where(ControlSequence.document_type == document_type)
        .values(next_number=ControlSequence.next_number + 1)
    )

    def _op() -> str:
        result = db.session.execute(stmt)
        if result.rowcount:
            next_num = _current_next_number(document_type) - 1
        else:
            db.session.add(ControlSequence(document_type=document_type, next_number=2))
            try:
                db.session.flush()
                next_num = 1
            except IntegrityError:
                db.session.rollback()
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                next_num = _current_next_number(document_type) - 1

        db.session.commit()
        return f"{prefix}-{next_num:0{pad}d}"

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
