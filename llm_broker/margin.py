"""Cost estimation and margin gating per account.

Margin is the share of an account's subscription value not yet spent on
provider calls:

    margin_pct = (subscription_value - cumulative_cost) / subscription_value * 100

The orchestrator calls ``ensure_margin`` before dispatching anything. Once an
account's margin falls below the floor (default 50%), requests are rejected
with MarginExceeded and no provider is called. The gate measures the stored
cumulative cost against the subscription value carried by the current request,
so an upgrade takes effect on the next request.

Cost recording is serialized per account with one asyncio.Lock per uid so two
overlapping requests from the same account cannot lose an increment. Different
accounts never contend. Locks are held weakly and go away once no request for
the account is in flight.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from llm_broker.errors import MarginExceeded, ValidationError
from llm_broker.models.margin_state import MarginStateRecord
from llm_broker.registry import ModelRegistry

log = structlog.get_logger(__name__)


@dataclass
class Subscription:
    """Account identity and subscription value supplied with each request."""

    uid: str
    value: float


@dataclass
class MarginState:
    """Cumulative cost of one account against its subscription value.

    ``margin_pct`` is derived on access so it can never go stale relative to
    the stored counters.
    """

    uid: str
    cumulative_cost: float = 0.0
    subscription_value: float = 0.0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def margin_pct(self) -> float:
        if self.subscription_value <= 0:
            return 0.0
        return (self.subscription_value - self.cumulative_cost) / self.subscription_value * 100

    def to_dict(self) -> dict[str, object]:
        return {
            "uid": self.uid,
            "cumulative_cost": round(self.cumulative_cost, 6),
            "subscription_value": self.subscription_value,
            "margin_pct": round(self.margin_pct, 2),
            "updated_at": self.updated_at.isoformat(),
        }


class MarginStore(Protocol):
    """Key-value persistence for MarginState, keyed by account id."""

    async def get(self, uid: str) -> MarginState | None: ...

    async def set(self, uid: str, state: MarginState) -> None: ...

    async def add_cost(self, uid: str, cost: float, subscription_value: float) -> MarginState:
        """Increment the account's cumulative cost and return the new state."""
        ...


class InMemoryMarginStore:
    """Process-local MarginStore. State is lost on restart."""

    def __init__(self) -> None:
        self._states: dict[str, MarginState] = {}

    async def get(self, uid: str) -> MarginState | None:
        state = self._states.get(uid)
        return replace(state) if state is not None else None

    async def set(self, uid: str, state: MarginState) -> None:
        self._states[uid] = replace(state)

    async def add_cost(self, uid: str, cost: float, subscription_value: float) -> MarginState:
        # Read-modify-write; CostMarginGuard serializes calls per account
        current = await self.get(uid)
        state = MarginState(
            uid=uid,
            cumulative_cost=(current.cumulative_cost if current else 0.0) + cost,
            subscription_value=subscription_value,
            updated_at=datetime.now(UTC),
        )
        await self.set(uid, state)
        return state


class SqlMarginStore:
    """MarginStore backed by the ``margin_states`` table.

    ``add_cost`` increments the counter inside the database
    (``cumulative_cost = cumulative_cost + :cost``), so several worker
    processes can share one database without losing an increment. ``set``
    overwrites the row under SELECT ... FOR UPDATE.

    Usage:
        store = SqlMarginStore(get_session_factory())
        guard = CostMarginGuard(registry, store)
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, uid: str) -> MarginState | None:
        async with self._session_factory() as session:
            record = await session.get(MarginStateRecord, uid)
            if record is None:
                return None
            return self._to_state(record)

    async def set(self, uid: str, state: MarginState) -> None:
        async with self._session_factory() as session:
            try:
                stmt = (
                    select(MarginStateRecord)
                    .where(MarginStateRecord.uid == uid)
                    .with_for_update()
                )
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
                if record is None:
                    record = MarginStateRecord(uid=uid)
                    session.add(record)

                record.cumulative_cost = state.cumulative_cost
                record.subscription_value = state.subscription_value
                record.updated_at = state.updated_at
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        log.debug("sql_margin_store.saved", uid=uid, cumulative_cost=state.cumulative_cost)

    async def add_cost(self, uid: str, cost: float, subscription_value: float) -> MarginState:
        try:
            state = await self._add_cost_once(uid, cost, subscription_value)
        except IntegrityError:
            # Another worker inserted the account first; its row now exists
            log.debug("sql_margin_store.insert_race", uid=uid)
            state = await self._add_cost_once(uid, cost, subscription_value)

        log.debug(
            "sql_margin_store.cost_added", uid=uid, cost=cost, cumulative_cost=state.cumulative_cost
        )
        return state

    async def _add_cost_once(self, uid: str, cost: float, subscription_value: float) -> MarginState:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(MarginStateRecord)
                    .where(MarginStateRecord.uid == uid)
                    .values(
                        cumulative_cost=MarginStateRecord.cumulative_cost + cost,
                        subscription_value=subscription_value,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.add(
                        MarginStateRecord(
                            uid=uid,
                            cumulative_cost=cost,
                            subscription_value=subscription_value,
                            updated_at=now,
                        )
                    )
                    await session.flush()

                row = await session.execute(
                    select(MarginStateRecord)
                    .where(MarginStateRecord.uid == uid)
                    .execution_options(populate_existing=True)
                )
                state = self._to_state(row.scalar_one())
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return state

    @staticmethod
    def _to_state(record: MarginStateRecord) -> MarginState:
        updated_at = record.updated_at
        # SQLite hands back naive datetimes
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=UTC)
        return MarginState(
            uid=record.uid,
            cumulative_cost=record.cumulative_cost,
            subscription_value=record.subscription_value,
            updated_at=updated_at,
        )


class CostMarginGuard:
    """Estimates request cost and enforces the per-account margin floor."""

    def __init__(
        self,
        registry: ModelRegistry,
        store: MarginStore,
        *,
        min_margin_pct: float = 50.0,
        retry_after_seconds: int = 3600,
    ) -> None:
        """Initialize the guard.

        Args:
            registry: Model catalog with per-model pricing
            store: Persistence for per-account counters
            min_margin_pct: Default floor used by ensure_margin/check_margin
            retry_after_seconds: Hint returned with MarginExceeded
        """
        self._registry = registry
        self._store = store
        self._min_margin_pct = min_margin_pct
        self._retry_after_seconds = retry_after_seconds
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def min_margin_pct(self) -> float:
        return self._min_margin_pct

    def estimate_cost(self, model_id: str, output_tokens: int, input_tokens: int = 0) -> float:
        """USD cost of a call to ``model_id`` with the given token counts.

        Raises:
            ValidationError: Unknown model or negative token count
        """
        if output_tokens < 0 or input_tokens < 0:
            raise ValidationError("Token counts cannot be negative")
        if model_id not in self._registry:
            raise ValidationError(f"Unknown model: {model_id}", details={"model_id": model_id})
        return self._registry.get(model_id).cost(input_tokens, output_tokens)

    async def get_state(self, uid: str) -> MarginState | None:
        return await self._store.get(uid)

    async def current_margin(self, uid: str, subscription_value: float | None = None) -> float | None:
        """Margin of ``uid`` in percent, or None for an account with no state.

        Args:
            uid: Account identifier
            subscription_value: Value carried by the current request. When
                given it replaces the value on record; spend so far always
                comes from the store.
        """
        state = await self._store.get(uid)
        if state is None and subscription_value is None:
            return None
        if subscription_value is None:
            subscription_value = state.subscription_value
        return MarginState(
            uid=uid,
            cumulative_cost=state.cumulative_cost if state else 0.0,
            subscription_value=subscription_value,
        ).margin_pct

    async def check_margin(
        self,
        uid: str,
        min_margin_pct: float | None = None,
        *,
        subscription_value: float | None = None,
    ) -> bool:
        """True if the account may dispatch another request.

        Accounts with no recorded state pass when no subscription value is
        supplied.
        """
        allowed, _ = await self._evaluate(uid, min_margin_pct, subscription_value)
        return allowed

    async def ensure_margin(
        self,
        uid: str,
        min_margin_pct: float | None = None,
        *,
        subscription_value: float | None = None,
    ) -> None:
        """Raise MarginExceeded if the account is below the floor."""
        floor = self._min_margin_pct if min_margin_pct is None else min_margin_pct
        allowed, margin_pct = await self._evaluate(uid, floor, subscription_value)
        if allowed:
            return
        raise MarginExceeded(uid, margin_pct, floor, retry_after_seconds=self._retry_after_seconds)

    async def _evaluate(
        self,
        uid: str,
        min_margin_pct: float | None,
        subscription_value: float | None,
    ) -> tuple[bool, float]:
        floor = self._min_margin_pct if min_margin_pct is None else min_margin_pct
        margin_pct = await self.current_margin(uid, subscription_value)
        if margin_pct is None:
            log.debug("margin_guard.no_state", uid=uid)
            return True, 100.0

        allowed = margin_pct >= floor
        if not allowed:
            log.warning(
                "margin_guard.margin_below_floor",
                uid=uid,
                margin_pct=round(margin_pct, 2),
                min_margin_pct=floor,
                subscription_value=subscription_value,
            )
        return allowed, margin_pct

    async def record_cost(self, uid: str, cost: float, subscription_value: float) -> MarginState:
        """Add ``cost`` to the account and return the updated state.

        The subscription value on record is replaced with the one supplied.

        Raises:
            ValidationError: Negative cost or subscription value
        """
        if cost < 0:
            raise ValidationError("Cost cannot be negative", details={"cost": cost})
        if subscription_value < 0:
            raise ValidationError(
                "Subscription value cannot be negative",
                details={"subscription_value": subscription_value},
            )

        lock = self._locks.get(uid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[uid] = lock
        async with lock:
            state = await self._store.add_cost(uid, cost, subscription_value)

        log.info(
            "margin_guard.cost_recorded",
            uid=uid,
            cost=cost,
            cumulative_cost=round(state.cumulative_cost, 6),
            margin_pct=round(state.margin_pct, 2),
        )
        return state
