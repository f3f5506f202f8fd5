"""Store contract used by the prediction engine and the list cache."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from restock.db.models import InventoryRule, ListEntry, PurchaseEvent


class StoreError(Exception):
    """A read or write against the backing store failed."""


class PredictionStore(ABC):
    """
    Read/write interface over purchase events, inventory rules and list entries.

    Implementations raise StoreError for any persistence failure so callers
    can recover per rule without catching driver-specific exceptions.
    """

    # Purchase events

    @abstractmethod
    async def list_purchase_events(
        self,
        household_id: str,
        product_id: str,
        after_timestamp: Optional[datetime] = None,
    ) -> List[PurchaseEvent]:
        """Events for the pair strictly after after_timestamp, oldest first."""

    @abstractmethod
    async def get_most_recent_purchase_quantity(
        self, household_id: str, product_id: str
    ) -> int:
        """Quantity of the latest purchase event, 1 when there is none."""

    @abstractmethod
    async def record_purchase(
        self,
        household_id: str,
        product_id: str,
        quantity: int,
        purchased_at: datetime,
    ) -> PurchaseEvent:
        """Append a purchase event, creating the pair's rule on first purchase."""

    # Inventory rules

    @abstractmethod
    async def get_rules(
        self,
        with_watermark: bool = False,
        with_estimate: bool = False,
    ) -> List[InventoryRule]:
        """
        Load rules.

        Args:
            with_watermark: Only rules with a non-null last_purchased_at
            with_estimate: Only rules with ema_days > 0
        """

    @abstractmethod
    async def get_rule(self, household_id: str, product_id: str) -> Optional[InventoryRule]:
        """Rule for a household/product pair, if any."""

    @abstractmethod
    async def update_rule(self, rule_id: int, fields: Dict[str, Any]) -> bool:
        """
        Partially update a rule.

        Returns:
            True if a write was issued, False if every field already matched
        """

    @abstractmethod
    async def list_suggestions(self, household_id: str) -> List[InventoryRule]:
        """Rules flagged suggest_only, highest confidence first."""

    # List entries

    @abstractmethod
    async def find_active_entry(self, household_id: str, product_id: str) -> Optional[ListEntry]:
        pass

    @abstractmethod
    async def find_snoozed_entry(self, household_id: str, product_id: str) -> Optional[ListEntry]:
        pass

    @abstractmethod
    async def list_entries(self, household_id: str) -> List[ListEntry]:
        """All entries for a household, newest first."""

    @abstractmethod
    async def insert_list_entry(self, fields: Dict[str, Any]) -> ListEntry:
        pass

    @abstractmethod
    async def update_list_entry(self, entry_id: int, fields: Dict[str, Any]) -> Optional[ListEntry]:
        """Returns the updated entry, or None if it no longer exists."""

    @abstractmethod
    async def delete_list_entry(self, entry_id: int) -> Optional[ListEntry]:
        """Returns the deleted entry, or None if it was already gone."""
