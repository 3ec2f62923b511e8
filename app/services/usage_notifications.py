"""Usage notification markers — at most one notification per threshold per billing cycle."""

import logging
from datetime import date

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import UsageNotification, new_uuid, utcnow

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class UsageNotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def has_notified(self, tenant_id: str, threshold: int, billing_cycle_start: date) -> bool:
        result = await self.db.execute(
            select(UsageNotification.id).where(
                UsageNotification.tenant_id == tenant_id,
                UsageNotification.threshold == threshold,
                UsageNotification.billing_cycle_start == billing_cycle_start,
            )
        )
        return result.first() is not None

    async def mark_notified(self, tenant_id: str, threshold: int, billing_cycle_start: date) -> bool:
        """Insert the marker unless it exists.

        Returns True when this call created it, False when another caller
        already had. Duplicates never raise.
        """
        values = dict(
            id=new_uuid(),
            tenant_id=tenant_id,
            threshold=threshold,
            billing_cycle_start=billing_cycle_start,
            notified_at=utcnow(),
        )
        dialect_insert = _UPSERT_DIALECTS.get(self.db.get_bind().dialect.name)

        try:
            if dialect_insert is not None:
                stmt = dialect_insert(UsageNotification).values(**values).on_conflict_do_nothing(
                    index_elements=["tenant_id", "threshold", "billing_cycle_start"]
                )
            else:
                stmt = insert(UsageNotification).values(**values)
            result = await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError:
            # Concurrent insert won the unique constraint
            await self.db.rollback()
            return False

        created = result.rowcount == 1
        if created:
            logger.info(f"Usage notification marked: tenant={tenant_id} threshold={threshold} cycle={billing_cycle_start}")
        return created
