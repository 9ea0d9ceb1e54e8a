# Overview: Atomic receipt / return / payment numbering.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence


# Document types and their printed prefixes
DOCUMENT_PREFIXES = {
    "SALE": "RCP",
    "RETURN": "RET",
    "BNPL_PAYMENT": "BNPL",
}


def _current_number(document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(document_type: str, *, prefix: str | None = None, pad: int = 6) -> str:
    """
    Atomically allocate the next document number for a type.

    Runs inside the caller's transaction (no commit, no retry of its own):
    the number is only consumed if the surrounding operation commits.

    Uses a single UPDATE ... SET next_number = next_number + 1 so concurrent
    writers serialize on the sequence row.
    """
    if not document_type:
        raise ValidationError("document_type is required", field="document_type")
    prefix = prefix or DOCUMENT_PREFIXES.get(document_type, document_type)

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        db.session.flush()
        next_num = _current_number(document_type)
    else:
        seq = DocumentSequence(document_type=document_type, next_number=2)
        try:
            # Savepoint so a lost insert race does not discard the caller's work
            with db.session.begin_nested():
                db.session.add(seq)
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            db.session.flush()
            next_num = _current_number(document_type)

    return f"{prefix}-{next_num:0{pad}d}"
