"""Batching — chunking, idempotency keys, and transfer request construction.

Invariants:
    - Batches preserve payout order; every batch has 1..batch_size payouts
    - idempotency_key depends only on (source cursor, recipients, amounts);
      recipient order inside the batch does not change it
    - Transfer units use the same floor rule as aggregation (core/amounts.py)

Design Decisions:
    - sha256 over canonical JSON: stable across processes and Python versions
"""

import hashlib
import json
from collections.abc import Sequence
from decimal import Decimal

from fee_distributor.core.amounts import format_amount, to_base_units
from fee_distributor.core.domain_types import (
    EventId,
    IdempotencyKey,
    Payout,
    SequencingHandle,
    TransferInstruction,
    TransferPayload,
)


def chunk_payouts(payouts: Sequence[Payout], batch_size: int) -> list[tuple[Payout, ...]]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [
        tuple(payouts[i:i + batch_size])
        for i in range(0, len(payouts), batch_size)
    ]


def idempotency_key(
    source_cursor: EventId,
    batch: Sequence[Payout],
    through: EventId | None = None,
) -> IdempotencyKey:
    """Key of one batch paid for the window (source_cursor, through].

    A window that grows between attempts yields new keys, so a remainder that
    happens to equal an earlier batch is still paid.
    """
    canonical = json.dumps(
        {
            "source_cursor": int(source_cursor),
            "through": int(source_cursor if through is None else through),
            "payouts": sorted(
                [p.recipient, format_amount(p.amount)] for p in batch
            ),
        },
        separators=(",", ":"),
        sort_keys=True,
    )
    return IdempotencyKey(hashlib.sha256(canonical.encode("utf-8")).hexdigest())


def build_transfer_payload(
    key: IdempotencyKey,
    handle: SequencingHandle,
    batch: Sequence[Payout],
    *,
    decimals: int,
    fee_adjustment: Decimal,
) -> TransferPayload:
    """Scale each payout by the fee-adjustment ratio, in integer base units."""
    return TransferPayload(
        idempotency_key=key,
        handle=handle,
        instructions=tuple(
            TransferInstruction(
                recipient=p.recipient,
                units=to_base_units(p.amount, decimals, fee_adjustment),
            )
            for p in batch
        ),
    )


def batch_to_json(batch: Sequence[Payout]) -> list[dict]:
    """Marker payload representation (amounts as plain strings)."""
    return [
        {"recipient": p.recipient, "amount": format_amount(p.amount)}
        for p in batch
    ]


def batch_from_json(rows: list[dict]) -> tuple[Payout, ...]:
    return tuple(
        Payout(recipient=r["recipient"], amount=Decimal(r["amount"]))
        for r in rows
    )
