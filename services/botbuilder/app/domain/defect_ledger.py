"""Learning ledger of recurring validator defects."""
from __future__ import annotations

import hashlib
import re
from typing import Iterable, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..persistence.models import ErrorPattern, utcnow
from .types import ValidationDefect

logger = structlog.get_logger(__name__)

_RECURRING = 2

_NORMALIZERS = (
    (re.compile(r"node -?\d+", re.IGNORECASE), "node X"),
    (re.compile(r'"-?\d+"'), '"X"'),
    (re.compile(r"row \d+", re.IGNORECASE), "row X"),
    (re.compile(r"\d+ characters?", re.IGNORECASE), "N characters"),
)


def normalize_message(message: str) -> str:
    for pattern, replacement in _NORMALIZERS:
        message = pattern.sub(replacement, message)
    return message.lower().strip()


def defect_signature(defect: ValidationDefect) -> str:
    """Stable identifier shared by defects that differ only in node or row numbers."""
    key = f"{(defect.field or 'unknown').lower()}:{normalize_message(defect.message)}"
    return "err_" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]


def categorize_defect(defect: ValidationDefect) -> str:
    description = defect.message.lower()
    field_name = defect.field.lower()
    if "nlu disabled" in description and "one child" in description:
        return "NLU_DISABLED_MULTI_CHILD"
    if "invalid json" in description or "malformed" in description:
        return "INVALID_JSON"
    if "does not exist" in description or "not found" in description:
        return "MISSING_REFERENCE"
    if "next nodes" in field_name and "child" in description:
        return "NEXT_NODES_CONSTRAINT"
    if "rich asset" in field_name:
        return "RICH_ASSET_ERROR"
    if "message" in field_name and "character" in description:
        return "MESSAGE_LENGTH"
    if "reserved" in description or "special character" in description:
        return "RESERVED_CHARACTER"
    if field_name:
        return re.sub(r"\s+", "_", field_name.upper()) + "_ERROR"
    return "OTHER"


class DefectLedger:
    """Upsert one ``error_pattern`` row per defect signature."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, defects: Sequence[ValidationDefect]) -> None:
        counts: dict[str, tuple[ValidationDefect, int]] = {}
        for defect in defects:
            signature = defect_signature(defect)
            first, seen = counts.get(signature, (defect, 0))
            counts[signature] = (first, seen + 1)

        now = utcnow()
        async with self._session_factory() as session:
            existing = await session.execute(select(ErrorPattern).where(ErrorPattern.signature.in_(list(counts))))
            patterns = {pattern.signature: pattern for pattern in existing.scalars()}
            for signature, (defect, seen) in counts.items():
                pattern = patterns.get(signature)
                if pattern is None:
                    session.add(
                        ErrorPattern(
                            signature=signature,
                            category=categorize_defect(defect),
                            field_name=defect.field,
                            sample_message=defect.message,
                            occurrences=seen,
                            first_seen=now,
                            last_seen=now,
                        )
                    )
                else:
                    pattern.occurrences += seen
                    pattern.last_seen = now
            await session.commit()
        logger.info("defect_ledger.recorded", signatures=len(counts), defects=len(defects))

    async def top_patterns(self, limit: int = 10, signatures: Iterable[str] | None = None) -> list[ErrorPattern]:
        query = select(ErrorPattern).order_by(ErrorPattern.occurrences.desc(), ErrorPattern.signature).limit(limit)
        if signatures is not None:
            query = query.where(ErrorPattern.signature.in_(list(signatures)))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def recall(self, defects: Sequence[ValidationDefect], limit: int = 5) -> list[str]:
        """Describe previously seen patterns behind ``defects`` for the repair request."""
        patterns = await self.top_patterns(limit, signatures={defect_signature(defect) for defect in defects})
        return [
            f"{pattern.category} seen {pattern.occurrences} times, e.g. [{pattern.field_name}] {pattern.sample_message}"
            for pattern in patterns
            if pattern.occurrences >= _RECURRING
        ]


__all__ = ["DefectLedger", "categorize_defect", "defect_signature", "normalize_message"]
