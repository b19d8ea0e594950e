from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..db.base import BaseDBManager, DuplicateKeyError
from ..models.revenue import RevenueEvent, RevenueSource


logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE = Decimal("0.06")


def estimate_fee(amount: int, rate: Decimal = DEFAULT_FEE_RATE) -> int:
    """Fixed-rate processor fee estimate in minor units, rounded half up."""
    if amount <= 0:
        return 0
    return int((Decimal(amount) * rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def net_amount(amount: int, estimated_fee: int, actual_fee: Optional[int]) -> int:
    fee = actual_fee if actual_fee is not None else estimated_fee
    return max(amount - fee, 0)


class RevenueService:
    """
    Append-only revenue ledger, one row per provider event.
    """

    def __init__(
        self,
        db: BaseDBManager,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        default_currency: str = "USD",
    ) -> None:
        self._db = db
        self._fee_rate = fee_rate
        self._default_currency = default_currency

    async def record_revenue(
        self,
        event_id: str,
        amount: int,
        currency: Optional[str],
        occurred_at: int,
        actual_fee: Optional[int] = None,
        source: RevenueSource = RevenueSource.SUBSCRIPTION_INVOICE,
        object_id: Optional[str] = None,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> str:
        """
        Record a monetary event and return its id.

        A second call for the same `event_id` returns the stored event's id
        and leaves it untouched, whatever the new arguments say.
        """
        existing = await self._db.get_revenue_event_by_event_id(event_id)
        if existing is not None:
            return existing.id  # type: ignore[return-value]

        estimated = estimate_fee(amount, self._fee_rate)
        event = RevenueEvent(
            event_id=event_id,
            object_id=object_id,
            user_id=user_id,
            customer_id=customer_id,
            source=source,
            amount=amount,
            currency=(currency or self._default_currency).upper(),
            estimated_fee=estimated,
            actual_fee=actual_fee,
            net_amount=net_amount(amount, estimated, actual_fee),
            occurred_at=occurred_at,
        )
        try:
            event = await self._db.add_revenue_event(event)
        except DuplicateKeyError:
            winner = await self._db.get_revenue_event_by_event_id(event_id)
            if winner is None:
                raise
            return winner.id  # type: ignore[return-value]

        logger.info(
            "Recorded %s revenue %d %s for event %s (fee %s)",
            source.value,
            amount,
            event.currency,
            event_id,
            "actual" if actual_fee is not None else "estimated",
        )
        return event.id  # type: ignore[return-value]

    async def apply_actual_fee(self, event_id: str, actual_fee: int) -> RevenueEvent:
        """
        Store a fee reported after the event was recorded. The estimate is
        kept as written; only the actual fee and the net amount change.
        """
        if actual_fee < 0:
            raise ValueError("actual_fee must not be negative")
        event = await self._db.get_revenue_event_by_event_id(event_id)
        if event is None:
            raise LookupError(f"No revenue event recorded for {event_id}")
        event.actual_fee = actual_fee
        event.net_amount = net_amount(event.amount, event.estimated_fee, actual_fee)
        return await self._db.update_revenue_event(event)

    async def get_revenue_event(self, event_id: str) -> Optional[RevenueEvent]:
        return await self._db.get_revenue_event_by_event_id(event_id)
