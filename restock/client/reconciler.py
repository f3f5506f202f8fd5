"""Optimistic local shopping-list cache with background reconciliation.

Every mutation is applied to the visible entries immediately and tracked as
a Mutation keyed by a local id. The store write happens in a background
task; on success the mutation is CONFIRMED, on failure the local change is
reverted, the mutation is ROLLED_BACK and a notification is emitted. A
rollback only touches an entry if no newer mutation has claimed it since,
so a late failure cannot undo a more recent user action.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

from restock.db.models import ListEntry
from restock.predict import overrides
from restock.predict.feedback import FeedbackSignal, record_signal
from restock.predict.scoring import CONFIDENCE_SUGGEST, ListEntryStatus
from restock.store.base import PredictionStore, StoreError

logger = logging.getLogger(__name__)

EntryId = Union[int, str]
PLACEHOLDER_PREFIX = "temp-"


class AddResult(str, Enum):
    ADDED = "added"
    EXISTS = "exists"
    REACTIVATED = "reactivated"


class MutationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class InvalidTransition(Exception):
    """A mutation was moved out of a terminal state."""


@dataclass
class Mutation:
    """One optimistic change and its reconciliation outcome."""

    mutation_id: str
    kind: str  # add, reactivate, check_off, remove, snooze, quantity
    entry_id: EntryId
    state: MutationState = MutationState.PENDING
    error: Optional[str] = None

    def confirm(self) -> None:
        self._transition(MutationState.CONFIRMED)

    def roll_back(self, error: str) -> None:
        self._transition(MutationState.ROLLED_BACK)
        self.error = error

    def _transition(self, target: MutationState) -> None:
        if self.state != MutationState.PENDING:
            raise InvalidTransition(
                f"Mutation {self.mutation_id} is {self.state.value}, cannot become {target.value}"
            )
        self.state = target


@dataclass
class CachedEntry:
    """Local copy of a list entry; placeholders carry a temp- id."""

    id: EntryId
    household_id: str
    product_id: str
    quantity: int = 1
    status: str = ListEntryStatus.ACTIVE.value
    added_at: datetime = field(default_factory=datetime.utcnow)
    purchased_at: Optional[datetime] = None
    snooze_until: Optional[datetime] = None
    last_mutation_id: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return isinstance(self.id, str) and self.id.startswith(PLACEHOLDER_PREFIX)

    @classmethod
    def from_row(cls, row: ListEntry) -> "CachedEntry":
        return cls(
            id=row.id,
            household_id=row.household_id,
            product_id=row.product_id,
            quantity=row.quantity,
            status=row.status,
            added_at=row.added_at,
            purchased_at=row.purchased_at,
            snooze_until=row.snooze_until,
        )


@dataclass
class Suggestion:
    rule_id: int
    product_id: str
    confidence_score: float


@dataclass
class OfflineAction:
    """A check-off whose store writes have not gone through yet."""

    mutation_id: str
    entry_id: int
    household_id: str
    product_id: str
    quantity: int
    purchased_at: datetime
    status_synced: bool = False
    event_recorded: bool = False


class ShoppingListCache:
    """
    A household's shopping list as seen by one client.

    Mutating methods return immediately after updating the local view;
    call wait_idle() to await the background store writes.
    """

    def __init__(
        self,
        store: PredictionStore,
        household_id: str,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.household_id = household_id
        self.notify = notify or (lambda message: logger.warning(message))

        self.entries: List[CachedEntry] = []
        self.suggestions: List[Suggestion] = []
        self.mutations: Dict[str, Mutation] = {}
        self.offline_queue: List[OfflineAction] = []

        self._cancelled_placeholders: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: EntryId) -> Optional[CachedEntry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def find_by_product(self, product_id: str, status: str) -> Optional[CachedEntry]:
        return next(
            (e for e in self.entries if e.product_id == product_id and e.status == status),
            None,
        )

    def pending_mutations(self) -> List[Mutation]:
        return [m for m in self.mutations.values() if m.state == MutationState.PENDING]

    def _begin(self, kind: str, entry: CachedEntry) -> Mutation:
        mutation = Mutation(mutation_id=uuid4().hex, kind=kind, entry_id=entry.id)
        self.mutations[mutation.mutation_id] = mutation
        entry.last_mutation_id = mutation.mutation_id
        return mutation

    def _owns(self, mutation: Mutation, entry: Optional[CachedEntry]) -> bool:
        return entry is not None and entry.last_mutation_id == mutation.mutation_id

    def _fail(self, mutation: Mutation, message: str) -> None:
        mutation.roll_back(message)
        logger.error(f"{mutation.kind} {mutation.entry_id} rolled back: {message}")
        self.notify(message)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every background store write has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def refresh(self, now: Optional[datetime] = None) -> None:
        """
        Reload entries from the store, then suggestions.

        Keeps active and purchased entries plus snoozed ones whose window
        has elapsed. Unconfirmed placeholders stay visible, and entries with
        a remove or snooze still in flight stay hidden.
        """
        now = now or datetime.utcnow()
        # Taken before the read: a write confirmed after it has already landed.
        hidden = {
            m.entry_id for m in self.pending_mutations() if m.kind in ("remove", "snooze")
        }
        rows = await self.store.list_entries(self.household_id)

        loaded = []
        for row in rows:
            if row.id in hidden:
                continue
            if row.status == ListEntryStatus.SNOOZED.value:
                if row.snooze_until is None or row.snooze_until > now:
                    continue
            loaded.append(CachedEntry.from_row(row))

        placeholders = [e for e in self.entries if e.is_placeholder]
        self.entries = placeholders + loaded
        await self.refresh_suggestions()

    async def refresh_suggestions(self) -> None:
        """Load suggest_only rules for products not already on the active list."""
        rules = await self.store.list_suggestions(self.household_id)
        active = {
            e.product_id for e in self.entries
            if e.status == ListEntryStatus.ACTIVE.value
        }
        self.suggestions = [
            Suggestion(
                rule_id=rule.id,
                product_id=rule.product_id,
                confidence_score=rule.confidence_score,
            )
            for rule in rules
            if rule.confidence_score >= CONFIDENCE_SUGGEST and rule.product_id not in active
        ]

    # ------------------------------------------------------------------
    # Add / accept
    # ------------------------------------------------------------------

    def add_item(self, product_id: str, quantity: int = 1) -> AddResult:
        """
        Add a product to the list without creating a duplicate.

        Returns:
            EXISTS if an active entry is already visible (no store call),
            REACTIVATED if a purchased entry was moved back to active,
            ADDED if a placeholder was inserted pending confirmation
        """
        if self.find_by_product(product_id, ListEntryStatus.ACTIVE.value):
            return AddResult.EXISTS

        purchased = self.find_by_product(product_id, ListEntryStatus.PURCHASED.value)
        if purchased is not None:
            self.reactivate_item(purchased.id)
            return AddResult.REACTIVATED

        placeholder = CachedEntry(
            id=f"{PLACEHOLDER_PREFIX}{uuid4().hex}",
            household_id=self.household_id,
            product_id=product_id,
            quantity=max(1, quantity),
        )
        self.entries.insert(0, placeholder)
        mutation = self._begin("add", placeholder)
        self._spawn(self._commit_add(mutation, placeholder))
        return AddResult.ADDED

    async def _commit_add(self, mutation: Mutation, placeholder: CachedEntry) -> None:
        temp_id = placeholder.id
        try:
            existing = await self.store.find_active_entry(self.household_id, placeholder.product_id)
            if existing is not None:
                # Another client got there first; adopt its row.
                self.entries = [e for e in self.entries if e.id != temp_id]
                if self.get_entry(existing.id) is None:
                    self.entries.insert(0, CachedEntry.from_row(existing))
                self._cancelled_placeholders.discard(temp_id)
                mutation.entry_id = existing.id
                mutation.confirm()
                return

            row = await self.store.insert_list_entry({
                "household_id": self.household_id,
                "product_id": placeholder.product_id,
                "quantity": placeholder.quantity,
                "status": ListEntryStatus.ACTIVE.value,
            })
        except StoreError as e:
            self.entries = [entry for entry in self.entries if entry.id != temp_id]
            self._fail(mutation, f"Could not add product {placeholder.product_id}: {e}")
            return

        if temp_id in self._cancelled_placeholders:
            # Removed while the insert was in flight: undo it in the store too.
            self._cancelled_placeholders.discard(temp_id)
            try:
                await self.store.delete_list_entry(row.id)
            except StoreError as e:
                self._fail(mutation, f"Could not undo add of product {row.product_id}: {e}")
                return
            mutation.confirm()
            return

        current = self.get_entry(temp_id)
        confirmed = CachedEntry.from_row(row)
        self.entries = [confirmed if e.id == temp_id else e for e in self.entries]
        mutation.entry_id = row.id
        mutation.confirm()

        if current is not None and current.quantity != row.quantity:
            self.update_quantity(row.id, current.quantity)

        try:
            await record_signal(self.store, FeedbackSignal.ACCEPTED, row)
        except StoreError as e:
            logger.error(f"Acceptance feedback failed for product {row.product_id}: {e}")

    def accept_suggestion(self, rule_id: int) -> Optional[AddResult]:
        """Drop a suggestion from view and add its product to the list."""
        suggestion = next((s for s in self.suggestions if s.rule_id == rule_id), None)
        if suggestion is None:
            return None
        self.suggestions = [s for s in self.suggestions if s.rule_id != rule_id]
        return self.add_item(suggestion.product_id, 1)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def reactivate_item(self, entry_id: EntryId) -> bool:
        """Move a purchased entry back to active."""
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != ListEntryStatus.PURCHASED.value:
            return False

        previous_purchased_at = entry.purchased_at
        entry.status = ListEntryStatus.ACTIVE.value
        entry.purchased_at = None
        mutation = self._begin("reactivate", entry)
        self._spawn(self._commit_reactivate(mutation, entry.id, previous_purchased_at))
        return True

    async def _commit_reactivate(
        self, mutation: Mutation, entry_id: int, previous_purchased_at: Optional[datetime]
    ) -> None:
        try:
            row = await self.store.update_list_entry(
                entry_id, {"status": ListEntryStatus.ACTIVE.value, "purchased_at": None}
            )
            if row is None:
                raise StoreError(f"List entry {entry_id} no longer exists")
        except StoreError as e:
            entry = self.get_entry(entry_id)
            if self._owns(mutation, entry):
                entry.status = ListEntryStatus.PURCHASED.value
                entry.purchased_at = previous_purchased_at
            self._fail(mutation, f"Could not move item back to the list: {e}")
            return
        mutation.confirm()

    def check_off_item(self, entry_id: EntryId, now: Optional[datetime] = None) -> bool:
        """
        Mark an active entry purchased and log the purchase.

        Store failures are queued for flush_offline_queue rather than rolled
        back; the mutation stays pending until the queue drains. A queued
        check-off whose entry has since been reactivated is dropped.
        """
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != ListEntryStatus.ACTIVE.value:
            return False
        if entry.is_placeholder:
            self.notify("Item is still being saved, try again in a moment")
            return False

        purchased_at = now or datetime.utcnow()
        entry.status = ListEntryStatus.PURCHASED.value
        entry.purchased_at = purchased_at
        mutation = self._begin("check_off", entry)
        action = OfflineAction(
            mutation_id=mutation.mutation_id,
            entry_id=entry.id,
            household_id=entry.household_id,
            product_id=entry.product_id,
            quantity=entry.quantity,
            purchased_at=purchased_at,
        )
        self._spawn(self._commit_check_off(action))
        return True

    def _check_off_superseded(self, action: OfflineAction) -> bool:
        entry = self.get_entry(action.entry_id)
        return entry is not None and (
            entry.status != ListEntryStatus.PURCHASED.value
            or entry.purchased_at != action.purchased_at
        )

    async def _sync_check_off(self, action: OfflineAction) -> bool:
        if not action.status_synced:
            if self._check_off_superseded(action):
                return False
            try:
                await self.store.update_list_entry(
                    action.entry_id,
                    {
                        "status": ListEntryStatus.PURCHASED.value,
                        "purchased_at": action.purchased_at,
                    },
                )
                action.status_synced = True
            except StoreError as e:
                logger.error(f"Purchase sync failed for entry {action.entry_id}: {e}")
                # The event waits for the status so an undone check-off logs nothing.
                return False

        if not action.event_recorded:
            if self._check_off_superseded(action):
                return False
            try:
                await self.store.record_purchase(
                    action.household_id,
                    action.product_id,
                    action.quantity,
                    action.purchased_at,
                )
                action.event_recorded = True
            except StoreError as e:
                logger.error(f"Purchase event insert failed for entry {action.entry_id}: {e}")

        return action.status_synced and action.event_recorded

    async def _settle_check_off(self, action: OfflineAction) -> bool:
        """
        Push a check-off to the store.

        A check-off the user has since undone locally is dropped instead of
        replayed, so a late retry cannot overwrite the newer state.

        Returns:
            True once the action needs no further retries
        """
        mutation = self.mutations[action.mutation_id]
        if await self._sync_check_off(action):
            mutation.confirm()
            return True
        if self._check_off_superseded(action):
            mutation.roll_back("Check-off undone before it was saved")
            logger.info(f"Dropped check-off of entry {action.entry_id}: undone before it was saved")
            return True
        return False

    async def _commit_check_off(self, action: OfflineAction) -> None:
        if not await self._settle_check_off(action):
            self.offline_queue.append(action)

    async def flush_offline_queue(self) -> int:
        """
        Retry queued check-offs.

        Returns:
            Number of actions that are still queued
        """
        queue, self.offline_queue = self.offline_queue, []
        for action in queue:
            if not await self._settle_check_off(action):
                self.offline_queue.append(action)
        return len(self.offline_queue)

    def remove_item(self, entry_id: EntryId) -> bool:
        """Delete an entry; it disappears from view immediately."""
        entry = self.get_entry(entry_id)
        if entry is None:
            return False

        index = self.entries.index(entry)
        self.entries.remove(entry)
        mutation = self._begin("remove", entry)

        if entry.is_placeholder:
            self._cancelled_placeholders.add(entry.id)
            mutation.confirm()
            return True

        self._spawn(self._commit_remove(mutation, entry, index))
        return True

    async def _commit_remove(self, mutation: Mutation, entry: CachedEntry, index: int) -> None:
        try:
            deleted = await self.store.delete_list_entry(entry.id)
        except StoreError as e:
            self._restore(entry, index)
            self._fail(mutation, f"Could not remove item: {e}")
            return
        mutation.confirm()

        if deleted is not None:
            await self._feedback(FeedbackSignal.DELETED, deleted, entry.status)

    def snooze_item(self, entry_id: EntryId, days: int, now: Optional[datetime] = None) -> bool:
        """Hide an entry until the snooze window elapses."""
        entry = self.get_entry(entry_id)
        if entry is None or entry.is_placeholder or days < 1:
            return False

        snooze_until = (now or datetime.utcnow()) + timedelta(days=days)
        index = self.entries.index(entry)
        self.entries.remove(entry)
        mutation = self._begin("snooze", entry)
        self._spawn(self._commit_snooze(mutation, entry, index, snooze_until))
        return True

    async def _commit_snooze(
        self, mutation: Mutation, entry: CachedEntry, index: int, snooze_until: datetime
    ) -> None:
        try:
            row = await self.store.update_list_entry(
                entry.id,
                {"status": ListEntryStatus.SNOOZED.value, "snooze_until": snooze_until},
            )
        except StoreError as e:
            self._restore(entry, index)
            self._fail(mutation, f"Could not snooze item: {e}")
            return
        mutation.confirm()

        if row is not None:
            await self._feedback(FeedbackSignal.SNOOZED, row, entry.status)

    def update_quantity(self, entry_id: EntryId, quantity: int) -> bool:
        """Change an entry's quantity; values below 1 are ignored."""
        entry = self.get_entry(entry_id)
        if entry is None or quantity < 1:
            return False

        previous = entry.quantity
        entry.quantity = quantity
        if entry.is_placeholder:
            # Carried over when the placeholder is confirmed.
            return True

        mutation = self._begin("quantity", entry)
        self._spawn(self._commit_quantity(mutation, entry.id, previous, quantity))
        return True

    async def _commit_quantity(
        self, mutation: Mutation, entry_id: int, previous: int, quantity: int
    ) -> None:
        try:
            row = await self.store.update_list_entry(entry_id, {"quantity": quantity})
            if row is None:
                raise StoreError(f"List entry {entry_id} no longer exists")
        except StoreError as e:
            entry = self.get_entry(entry_id)
            if self._owns(mutation, entry):
                entry.quantity = previous
            self._fail(mutation, f"Could not update quantity: {e}")
            return
        mutation.confirm()

    def _restore(self, entry: CachedEntry, index: int) -> None:
        if self.get_entry(entry.id) is None:
            self.entries.insert(min(index, len(self.entries)), entry)

    async def _feedback(self, signal: FeedbackSignal, row: ListEntry, previous_status: str) -> None:
        try:
            await record_signal(self.store, signal, row, previous_status=previous_status)
        except StoreError as e:
            logger.error(f"{signal.value} feedback failed for product {row.product_id}: {e}")

    # ------------------------------------------------------------------
    # Concurrent changes from other clients
    # ------------------------------------------------------------------

    def apply_remote_change(self, event: str, row: Any) -> None:
        """
        Merge an INSERT, UPDATE or DELETE made by another client.

        Args:
            event: 'INSERT', 'UPDATE' or 'DELETE'
            row: The changed list entry (only id is needed for DELETE)
        """
        event = event.upper()

        if event == "DELETE":
            self.entries = [e for e in self.entries if e.id != row.id]
            return

        if event == "INSERT":
            if row.status != ListEntryStatus.ACTIVE.value:
                return
            if self.get_entry(row.id) or self.find_by_product(
                row.product_id, ListEntryStatus.ACTIVE.value
            ):
                return
            self.entries.insert(0, CachedEntry.from_row(row))
            return

        if event != "UPDATE":
            raise ValueError(f"Unknown change event: {event}")

        entry = self.get_entry(row.id)
        if row.status == ListEntryStatus.SNOOZED.value:
            self.entries = [e for e in self.entries if e.id != row.id]
        elif row.status == ListEntryStatus.PURCHASED.value:
            if entry is not None:
                entry.status = ListEntryStatus.PURCHASED.value
                entry.purchased_at = row.purchased_at
        elif row.status == ListEntryStatus.ACTIVE.value:
            if entry is not None:
                entry.status = ListEntryStatus.ACTIVE.value
                entry.purchased_at = None
                entry.quantity = row.quantity
            elif not self.find_by_product(row.product_id, ListEntryStatus.ACTIVE.value):
                self.entries.insert(0, CachedEntry.from_row(row))

    # ------------------------------------------------------------------
    # Manual control of the product's rule
    # ------------------------------------------------------------------

    async def force_manual(self, product_id: str, ema_days: Optional[float] = None) -> bool:
        """Stop automatic handling of a product, optionally pinning its interval."""
        rule = await self.store.get_rule(self.household_id, product_id)
        if rule is None:
            return False
        await overrides.force_manual(self.store, rule, ema_days=ema_days)
        return True

    async def reset_to_automatic(self, product_id: str) -> bool:
        """Hand a product back to the prediction engine."""
        rule = await self.store.get_rule(self.household_id, product_id)
        if rule is None:
            return False
        await overrides.reset_to_automatic(self.store, rule)
        await self.refresh_suggestions()
        return True
