"""
Document Sequence Service for per-account document numbering

Numbers look like {PREFIX}-{NNNNN}: INV-10001, INV-10002, EST-10001 ...

RULES:
- A number is assigned once, when the document is first persisted
- The next number is the account's highest existing numeric suffix + 1
- Numbers are never regenerated and never reused, cancelled documents
  keep theirs
- Uniqueness is enforced by a (account_id, number) unique constraint

USAGE:
    from app.services.document_sequence_service import DocumentSequenceService

    service = DocumentSequenceService(db, account_id)
    number = await service.get_next_number("INVOICE")
    # Returns: INV-10001
"""
import re
import uuid
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.billing import Invoice, Estimate


# Document type metadata
DOCUMENT_METADATA = {
    "INVOICE": {
        "name": "Invoice",
        "model": Invoice,
        "column": Invoice.invoice_number,
        "prefix": settings.INVOICE_NUMBER_PREFIX,
    },
    "ESTIMATE": {
        "name": "Estimate",
        "model": Estimate,
        "column": Estimate.estimate_number,
        "prefix": settings.ESTIMATE_NUMBER_PREFIX,
    },
}

_DIGITS = re.compile(r"[0-9]+")


def parse_sequence_number(document_number: Optional[str]) -> Optional[int]:
    """Extract the numeric suffix of a document number, e.g. INV-10042 -> 10042."""
    if not document_number:
        return None
    digits = _DIGITS.findall(document_number)
    if not digits:
        return None
    return int(digits[-1])


def format_document_number(prefix: str, number: int) -> str:
    return f"{prefix}-{number}"


class DocumentSequenceService:
    """
    Service for generating per-account document numbers.

    The highest number is found with an ORDER BY on (length, value), which
    sorts same-prefix numbers numerically on both PostgreSQL and SQLite.
    Concurrent writers that race for the same number are stopped by the
    unique constraint; the losing transaction is retried by its caller.
    """

    def __init__(self, db: AsyncSession, account_id: uuid.UUID):
        self.db = db
        self.account_id = account_id

    def _metadata(self, document_type: str) -> dict:
        doc_type = document_type.upper()
        if doc_type not in DOCUMENT_METADATA:
            valid_types = ", ".join(DOCUMENT_METADATA.keys())
            raise ValueError(f"Invalid document type '{doc_type}'. Valid types: {valid_types}")
        return DOCUMENT_METADATA[doc_type]

    async def get_last_number(self, document_type: str) -> Optional[str]:
        """Highest document number already used by this account, if any."""
        metadata = self._metadata(document_type)
        model = metadata["model"]
        column = metadata["column"]

        result = await self.db.execute(
            select(column)
            .where(
                model.account_id == self.account_id,
                column.isnot(None),
            )
            .order_by(func.length(column).desc(), column.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_next_number(self, document_type: str) -> str:
        """
        Get the next document number for this account.

        Args:
            document_type: INVOICE or ESTIMATE

        Returns:
            Formatted document number, e.g., INV-10001

        Raises:
            ValueError: If document_type is invalid
        """
        metadata = self._metadata(document_type)
        last_number = parse_sequence_number(await self.get_last_number(document_type))

        if last_number is None:
            next_number = settings.DOCUMENT_NUMBER_START
        else:
            next_number = last_number + 1

        return format_document_number(metadata["prefix"], next_number)
