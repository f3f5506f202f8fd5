"""Shared fixtures: a throwaway SQLite database and seeding helpers."""

from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from restock.db.models import Base, InventoryRule, ListEntry, PurchaseEvent
from restock.store.sql import SQLPredictionStore

HOUSEHOLD = "hh-1"


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'restock_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SQLPredictionStore(session_factory)


@pytest.fixture
def add_rule(session_factory):
    async def _add(product_id="milk", household_id=HOUSEHOLD, **fields):
        async with session_factory() as db:
            rule = InventoryRule(household_id=household_id, product_id=product_id, **fields)
            db.add(rule)
            await db.commit()
            await db.refresh(rule)
            return rule
    return _add


@pytest.fixture
def add_event(session_factory):
    async def _add(purchased_at: datetime, product_id="milk", household_id=HOUSEHOLD, quantity=1):
        async with session_factory() as db:
            event = PurchaseEvent(
                household_id=household_id,
                product_id=product_id,
                quantity=quantity,
                purchased_at=purchased_at,
            )
            db.add(event)
            await db.commit()
            await db.refresh(event)
            return event
    return _add


@pytest.fixture
def add_entry(session_factory):
    async def _add(product_id="milk", household_id=HOUSEHOLD, **fields):
        async with session_factory() as db:
            entry = ListEntry(household_id=household_id, product_id=product_id, **fields)
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
            return entry
    return _add


@pytest.fixture
def load_rule(session_factory):
    async def _load(rule_id: int) -> InventoryRule:
        async with session_factory() as db:
            return await db.get(InventoryRule, rule_id)
    return _load


@pytest.fixture
def list_entries(session_factory):
    async def _list(product_id=None, status=None):
        query = select(ListEntry)
        if product_id is not None:
            query = query.where(ListEntry.product_id == product_id)
        if status is not None:
            query = query.where(ListEntry.status == status)
        async with session_factory() as db:
            result = await db.execute(query.order_by(ListEntry.id))
            return list(result.scalars().all())
    return _list
