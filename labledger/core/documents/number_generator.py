from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.documents.models import DocumentSequence

SAMPLE_ID_PREFIX = "SMP"


class DocumentNumberGenerator:
    """
    Generates numbers that restart every day, in format: PREFIX-YYYYMMDD-NNNN

    Examples:
        SMP-20261018-0001
        SMP-20261018-0042
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate(self, prefix: str, day: date | None = None) -> str:
        """
        Generate the next number for prefix on day (UTC today by default).

        The sequence row is locked with SELECT FOR UPDATE, so concurrent
        callers never receive the same number. Does not commit.
        """
        if day is None:
            day = datetime.now(timezone.utc).date()
        period = day.strftime("%Y%m%d")

        stmt = (
            select(DocumentSequence)
            .where(DocumentSequence.prefix == prefix, DocumentSequence.period == period)
            .with_for_update()
        )
        sequence = await self.session.scalar(stmt)

        if sequence is None:
            sequence = DocumentSequence(prefix=prefix, period=period, last_number=0)
            self.session.add(sequence)
            await self.session.flush()
            sequence = await self.session.scalar(stmt)

        sequence.last_number += 1
        await self.session.flush()

        return f"{prefix}-{period}-{sequence.last_number:04d}"


async def next_sample_id(session: AsyncSession, day: date | None = None) -> str:
    """Next SMP-YYYYMMDD-NNNN sample id."""
    return await DocumentNumberGenerator(session).generate(SAMPLE_ID_PREFIX, day)
