"""SQLAlchemy implementation of the prediction store."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restock.db.models import InventoryRule, ListEntry, PurchaseEvent
from restock.predict.scoring import ListEntryStatus, RuleStatus
from restock.store.base import PredictionStore, StoreError

logger = logging.getLogger(__name__)


class SQLPredictionStore(PredictionStore):
    """
    Store backed by an async SQLAlchemy session factory.

    Each call opens its own session and commits its own writes, so a failure
    while handling one rule never rolls back work already done for another.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    # ------------------------------------------------------------------
    # Purchase events
    # ------------------------------------------------------------------

    async def list_purchase_events(
        self,
        household_id: str,
        product_id: str,
        after_timestamp: Optional[datetime] = None,
    ) -> List[PurchaseEvent]:
        query = select(PurchaseEvent).where(
            PurchaseEvent.household_id == household_id,
            PurchaseEvent.product_id == product_id,
        )
        if after_timestamp is not None:
            query = query.where(PurchaseEvent.purchased_at > after_timestamp)
        query = query.order_by(PurchaseEvent.purchased_at.asc(), PurchaseEvent.id.asc())

        async with self._session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_most_recent_purchase_quantity(
        self, household_id: str, product_id: str
    ) -> int:
        query = (
            select(PurchaseEvent.quantity)
            .where(
                PurchaseEvent.household_id == household_id,
                PurchaseEvent.product_id == product_id,
            )
            .order_by(PurchaseEvent.purchased_at.desc(), PurchaseEvent.id.desc())
            .limit(1)
        )
        async with self._session() as db:
            result = await db.execute(query)
            quantity = result.scalar_one_or_none()
        return quantity or 1

    async def record_purchase(
        self,
        household_id: str,
        product_id: str,
        quantity: int,
        purchased_at: datetime,
    ) -> PurchaseEvent:
        async with self._session() as db:
            event = PurchaseEvent(
                household_id=household_id,
                product_id=product_id,
                quantity=max(1, quantity),
                purchased_at=purchased_at,
            )
            db.add(event)

            result = await db.execute(
                select(InventoryRule).where(
                    InventoryRule.household_id == household_id,
                    InventoryRule.product_id == product_id,
                )
            )
            rule = result.scalar_one_or_none()
            if rule is None:
                # First purchase only sets the watermark; the next one yields an interval.
                db.add(InventoryRule(
                    household_id=household_id,
                    product_id=product_id,
                    ema_days=0.0,
                    confidence_score=0.0,
                    last_purchased_at=purchased_at,
                    status=RuleStatus.MANUAL_ONLY.value,
                ))
            elif rule.last_purchased_at is None:
                rule.last_purchased_at = purchased_at

            await db.commit()
            await db.refresh(event)
            return event

    # ------------------------------------------------------------------
    # Inventory rules
    # ------------------------------------------------------------------

    async def get_rules(
        self,
        with_watermark: bool = False,
        with_estimate: bool = False,
    ) -> List[InventoryRule]:
        query = select(InventoryRule)
        if with_watermark:
            query = query.where(InventoryRule.last_purchased_at.is_not(None))
        if with_estimate:
            query = query.where(InventoryRule.ema_days > 0)
        query = query.order_by(InventoryRule.id.asc())

        async with self._session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_rule(self, household_id: str, product_id: str) -> Optional[InventoryRule]:
        async with self._session() as db:
            result = await db.execute(
                select(InventoryRule).where(
                    InventoryRule.household_id == household_id,
                    InventoryRule.product_id == product_id,
                )
            )
            return result.scalar_one_or_none()

    async def update_rule(self, rule_id: int, fields: Dict[str, Any]) -> bool:
        async with self._session() as db:
            rule = await db.get(InventoryRule, rule_id)
            if rule is None:
                raise StoreError(f"Inventory rule {rule_id} not found")

            changed = False
            for name, value in fields.items():
                if getattr(rule, name) != value:
                    setattr(rule, name, value)
                    changed = True

            if not changed:
                return False

            await db.commit()
            logger.debug(f"Updated rule {rule_id}: {sorted(fields)}")
            return True

    async def list_suggestions(self, household_id: str) -> List[InventoryRule]:
        async with self._session() as db:
            result = await db.execute(
                select(InventoryRule)
                .where(
                    InventoryRule.household_id == household_id,
                    InventoryRule.status == RuleStatus.SUGGEST_ONLY.value,
                )
                .order_by(InventoryRule.confidence_score.desc())
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # List entries
    # ------------------------------------------------------------------

    async def _find_entry(
        self, household_id: str, product_id: str, status: ListEntryStatus
    ) -> Optional[ListEntry]:
        async with self._session() as db:
            result = await db.execute(
                select(ListEntry)
                .where(
                    ListEntry.household_id == household_id,
                    ListEntry.product_id == product_id,
                    ListEntry.status == status.value,
                )
                .order_by(ListEntry.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_active_entry(self, household_id: str, product_id: str) -> Optional[ListEntry]:
        return await self._find_entry(household_id, product_id, ListEntryStatus.ACTIVE)

    async def find_snoozed_entry(self, household_id: str, product_id: str) -> Optional[ListEntry]:
        return await self._find_entry(household_id, product_id, ListEntryStatus.SNOOZED)

    async def list_entries(self, household_id: str) -> List[ListEntry]:
        async with self._session() as db:
            result = await db.execute(
                select(ListEntry)
                .where(ListEntry.household_id == household_id)
                .order_by(ListEntry.added_at.desc(), ListEntry.id.desc())
            )
            return list(result.scalars().all())

    async def insert_list_entry(self, fields: Dict[str, Any]) -> ListEntry:
        async with self._session() as db:
            entry = ListEntry(**fields)
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
            return entry

    async def update_list_entry(self, entry_id: int, fields: Dict[str, Any]) -> Optional[ListEntry]:
        async with self._session() as db:
            entry = await db.get(ListEntry, entry_id)
            if entry is None:
                return None
            for name, value in fields.items():
                setattr(entry, name, value)
            await db.commit()
            await db.refresh(entry)
            return entry

    async def delete_list_entry(self, entry_id: int) -> Optional[ListEntry]:
        async with self._session() as db:
            entry = await db.get(ListEntry, entry_id)
            if entry is None:
                return None
            await db.delete(entry)
            await db.commit()
            return entry
