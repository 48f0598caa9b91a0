"""Ledger Aggregator — turns events past the watermark into per-recipient payouts.

Invariants:
    - observed_max_id is snapshotted first; only events in
      (since_cursor, observed_max_id] are evaluated, so the watermark matches
      exactly the evaluated event set even while ingestion keeps inserting
    - observed_max_id is returned whether or not any recipient passed the threshold
    - Carried balances and amounts already paid from the same source cursor
      (aborted passes) are folded in before the threshold is applied
    - Same DB state + same cursor => identical AggregationResult

Design Decisions:
    - Rows are summed in Python (core/aggregation.py), not with SQL SUM: the
      decimal rule must be identical on every backend
    - Events whose asset has no mapping are counted and logged, never guessed at
"""

import logging
from decimal import Decimal

from sqlalchemy import and_, func, select

from fee_distributor.core.aggregation import build_payouts, group_quantities
from fee_distributor.core.domain_types import (
    AggregationResult,
    EventId,
    RecipientAddress,
)
from fee_distributor.infrastructure.database import DatabaseSessionManager
from fee_distributor.models.asset import Asset
from fee_distributor.models.carried_balance import CarriedBalance
from fee_distributor.models.ledger_event import LedgerEvent
from fee_distributor.services.batch_outbox import BatchOutbox

logger = logging.getLogger(__name__)


class LedgerAggregator:
    """Reads ledger events and computes payable amounts."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        outbox: BatchOutbox,
        *,
        fee_rate: Decimal,
        min_payable: Decimal,
        decimals: int,
    ):
        self._db = db
        self._outbox = outbox
        self.fee_rate = fee_rate
        self.min_payable = min_payable
        self.decimals = decimals

    async def aggregate(self, since_cursor: EventId) -> AggregationResult:
        async with self._db.session() as s:
            observed_max = await s.scalar(
                select(func.max(LedgerEvent.id)).where(LedgerEvent.id > since_cursor),
            )
            if observed_max is None:
                return AggregationResult(since_cursor=since_cursor, observed_max_id=None)

            window = and_(
                LedgerEvent.id > since_cursor, LedgerEvent.id <= observed_max,
            )
            event_count = await s.scalar(
                select(func.count()).select_from(LedgerEvent).where(window),
            )
            mapped = await s.execute(
                select(Asset.recipient_address, LedgerEvent.quantity)
                .join(Asset, Asset.asset_ref == LedgerEvent.asset_ref)
                .where(window)
                .order_by(LedgerEvent.id),
            )
            rows = [
                (RecipientAddress(r.recipient_address), r.quantity) for r in mapped
            ]
            carried_rows = await s.execute(select(CarriedBalance))
            carried = {
                RecipientAddress(c.recipient_address): c.amount
                for c in carried_rows.scalars()
            }

        already_paid = await self._outbox.paid_since(since_cursor)
        payouts, deferred = build_payouts(
            group_quantities(rows),
            carried,
            already_paid,
            fee_rate=self.fee_rate,
            min_payable=self.min_payable,
            decimals=self.decimals,
        )

        unmapped = event_count - len(rows)
        if unmapped:
            logger.warning(
                f"{unmapped} ledger events have no asset mapping and cannot be paid",
                extra={"cursor": int(since_cursor)},
            )
        if already_paid:
            logger.info(
                f"Netting {len(already_paid)} recipients already paid since cursor {since_cursor}",
                extra={"cursor": int(since_cursor)},
            )

        result = AggregationResult(
            since_cursor=since_cursor,
            observed_max_id=EventId(observed_max),
            payouts=payouts,
            deferred=deferred,
            event_count=event_count,
            unmapped_event_count=unmapped,
        )
        logger.info(
            f"Aggregated {event_count} events into {len(payouts)} payouts "
            f"({len(deferred)} deferred), window ({since_cursor}, {observed_max}]",
            extra={"cursor": int(since_cursor)},
        )
        return result
