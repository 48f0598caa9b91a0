"""Payout Aggregation — pure grouping, fee, threshold and carry-forward math.

Invariants:
    - owed = quantity * fee_rate + carried - already_paid, computed exactly
    - payable = floor_to_unit(owed); paid only when payable >= min_payable
    - deferred = owed - payable when paid (sub-unit dust), owed otherwise;
      zero remainders are dropped, so deferred never holds 0
    - Output order is sorted by recipient: identical inputs give identical output

Design Decisions:
    - Carry-forward over drop: a sub-threshold recipient's value is kept as a
      carried balance and joins the next pass, so advancing the cursor never
      orphans small balances
    - Negative owed (paid more than owed, e.g. fee rate lowered between an
      aborted pass and its retry) is carried as a negative balance and nets out
      against future payouts instead of being forgotten
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal

from fee_distributor.core.amounts import apply_fee_rate, exact_sum, floor_to_unit
from fee_distributor.core.domain_types import Payout, RecipientAddress


def group_quantities(
    rows: Iterable[tuple[RecipientAddress, Decimal]],
) -> dict[RecipientAddress, Decimal]:
    """Sum raw event quantities per recipient."""
    grouped: dict[RecipientAddress, list[Decimal]] = {}
    for recipient, quantity in rows:
        grouped.setdefault(recipient, []).append(quantity)
    return {r: exact_sum(q) for r, q in grouped.items()}


def build_payouts(
    quantities: Mapping[RecipientAddress, Decimal],
    carried: Mapping[RecipientAddress, Decimal],
    already_paid: Mapping[RecipientAddress, Decimal],
    *,
    fee_rate: Decimal,
    min_payable: Decimal,
    decimals: int,
) -> tuple[tuple[Payout, ...], dict[RecipientAddress, Decimal]]:
    """Return (payouts, deferred) for one evaluation window."""
    recipients = sorted(set(quantities) | set(carried) | set(already_paid))
    payouts: list[Payout] = []
    deferred: dict[RecipientAddress, Decimal] = {}

    for recipient in recipients:
        owed = exact_sum((
            apply_fee_rate(quantities.get(recipient, Decimal("0")), fee_rate),
            carried.get(recipient, Decimal("0")),
            -already_paid.get(recipient, Decimal("0")),
        ))
        payable = floor_to_unit(owed, decimals)
        if payable > 0 and payable >= min_payable:
            payouts.append(Payout(recipient=recipient, amount=payable))
            remainder = owed - payable
        else:
            remainder = owed
        if remainder != 0:
            deferred[recipient] = remainder

    return tuple(payouts), deferred
