"""Integration Tests: ReconciliationDriver — full passes end to end.

Invariants:
    - A completed pass records every payout and commits cursor = observed_max_id
    - An aborted pass leaves the cursor unchanged and reports its error code
    - Below-threshold value is carried forward, never paid early and never lost
    - A resumed pass never pays a recorded batch again
    - Only one pass runs at a time (in-process flag and durable lease)
"""

import asyncio
from decimal import Decimal

from sqlalchemy import func, select

from fee_distributor.core.domain_types import PassOutcome, PassState
from fee_distributor.models.account_balance import AccountBalance
from fee_distributor.models.distribution import DistributionRecord
from fee_distributor.services.reconciliation_driver import ReconciliationDriver

from tests.services.conftest import make_executor


async def _records(db):
    async with db.session() as s:
        result = await s.execute(
            select(DistributionRecord.recipient_address, DistributionRecord.amount)
            .order_by(DistributionRecord.created_at, DistributionRecord.recipient_address),
        )
        return [(r.recipient_address, r.amount) for r in result]


async def _balance(db, recipient):
    async with db.session() as s:
        row = await s.get(AccountBalance, recipient)
        return row.total_claimed if row else None


async def _paid_total(db, recipient):
    async with db.session() as s:
        result = await s.execute(
            select(DistributionRecord.amount)
            .where(DistributionRecord.recipient_address == recipient),
        )
        return sum(result.scalars(), Decimal("0"))


# ==============================================================================
# Scenarios
# ==============================================================================


async def test_single_event_is_paid_and_cursor_advances(db, driver, cursor_store, seed):
    """Event (id=1, quantity=10) for W at fee 0.002 → pays 0.02, cursor → 1."""
    await seed([(1, "A", "10")], {"A": "W"})
    report = await driver.run_pass()

    assert report.outcome == PassOutcome.COMMITTED
    assert report.cursor_after == 1
    assert report.batches == 1
    assert await _records(db) == [("W", Decimal("0.02"))]
    assert await _balance(db, "W") == Decimal("0.02")
    assert await cursor_store.get_latest() == 1


async def test_sub_threshold_amount_is_carried_forward(db, driver, cursor_store, seed):
    """0.0005 < 0.001 → no record now; carried, then paid once it adds up."""
    await seed([(1, "A", "0.25")], {"A": "W"})
    first = await driver.run_pass()

    assert first.outcome == PassOutcome.COMMITTED
    assert first.payouts == 0
    assert await _records(db) == []
    assert await cursor_store.get_latest() == 1
    assert await cursor_store.carried_balances() == {"W": Decimal("0.0005")}

    await seed([(2, "A", "0.25")])
    second = await driver.run_pass()

    assert second.outcome == PassOutcome.COMMITTED
    assert await _records(db) == [("W", Decimal("0.001"))]
    assert await cursor_store.get_latest() == 2
    assert await cursor_store.carried_balances() == {}


async def test_exhausted_retries_abort_without_advancing(db, driver, network, cursor_store, seed):
    await seed([(1, "A", "10"), (2, "B", "10")], {"A": "W", "B": "X"})
    network.handle_fails = 3
    report = await driver.run_pass()

    assert report.outcome == PassOutcome.ABORTED
    assert report.error_code == "RETRIES_EXHAUSTED"
    assert await cursor_store.get_latest() is None
    assert await _records(db) == []
    assert driver.state == PassState.IDLE
    assert driver.stats.consecutive_aborts == 1

    # the next pass pays the same window
    retry = await driver.run_pass()
    assert retry.outcome == PassOutcome.COMMITTED
    assert await cursor_store.get_latest() == 2
    assert len(await _records(db)) == 2
    assert driver.stats.consecutive_aborts == 0


async def test_timed_out_but_posted_batch_is_paid_once(db, driver, network, seed):
    await seed([(1, "A", "10"), (2, "B", "15")], {"A": "W", "B": "X"})
    network.script = ["timeout_posted"]
    report = await driver.run_pass()

    assert report.outcome == PassOutcome.COMMITTED
    assert len(network.distinct_refs) == 1
    assert await _records(db) == [
        ("W", Decimal("0.02")), ("X", Decimal("0.03")),
    ]


# ==============================================================================
# Resume and idempotency
# ==============================================================================


async def test_lost_submit_response_is_not_paid_again_by_a_later_pass(
    db, driver, network, outbox, cursor_store, seed,
):
    """The gateway accepted the batch but every response was lost."""
    await seed([(1, "A", "10")], {"A": "W"})
    network.script = ["transient_posted"] * 3

    first = await driver.run_pass()
    assert first.outcome == PassOutcome.ABORTED
    assert first.error_code == "TRANSFER_OUTCOME_UNKNOWN"
    assert len(await outbox.unresolved()) == 1

    # still pending on the network: the next pass waits instead of resubmitting
    await seed([(2, "A", "10")])
    submissions = len(network.submissions)
    blocked = await driver.run_pass()
    assert blocked.outcome == PassOutcome.ABORTED
    assert len(network.submissions) == submissions

    network.settle_pending()
    settled = await driver.run_pass()
    assert settled.outcome == PassOutcome.COMMITTED
    assert await cursor_store.get_latest() == 2

    # (10 + 10) * 0.002 = 0.04 owed, 0.99 of it in base units
    assert network.units_sent_to("W") == 39_600_000
    assert await _paid_total(db, "W") == Decimal("0.04")



async def test_resume_after_partial_abort_does_not_repay(
    db, outbox, network, cursor_store, aggregator, seed,
):
    executor = make_executor(outbox, network, batch_size=1)
    driver = ReconciliationDriver(
        cursor_store, aggregator, executor, worker_id="worker-a",
    )
    await seed([(1, "A", "10"), (2, "B", "10")], {"A": "W", "B": "X"})
    network.script = ["ok", "reject"]

    aborted = await driver.run_pass()
    assert aborted.outcome == PassOutcome.ABORTED
    assert aborted.error_code == "TRANSFER_REJECTED"
    assert await _records(db) == [("W", Decimal("0.02"))]
    assert await cursor_store.get_latest() is None

    resumed = await driver.run_pass()
    assert resumed.outcome == PassOutcome.COMMITTED
    assert resumed.payouts == 1
    assert await _paid_total(db, "W") == Decimal("0.02")
    assert await _paid_total(db, "X") == Decimal("0.02")
    assert await cursor_store.get_latest() == 2


async def test_no_recipient_is_overpaid_across_passes(db, driver, cursor_store, seed):
    await seed([(1, "A", "10"), (2, "A", "0.3")], {"A": "W", "B": "X"})
    await driver.run_pass()
    await seed([(3, "A", "0.3"), (4, "B", "1")])
    await driver.run_pass()
    await seed([(5, "A", "0.4")])
    await driver.run_pass()

    # W: (10 + 0.3 + 0.3 + 0.4) * 0.002 = 0.022 owed in total
    paid = await _paid_total(db, "W")
    carried = (await cursor_store.carried_balances()).get("W", Decimal("0"))
    assert paid + carried == Decimal("0.022")
    assert paid <= Decimal("0.022")
    assert await _balance(db, "W") == paid


async def test_cursor_is_monotonic_across_passes(driver, cursor_store, seed):
    await seed([(1, "A", "10")], {"A": "W"})
    seen = []
    for next_id in (2, 3, 4):
        await driver.run_pass()
        seen.append(await cursor_store.get_latest())
        await seed([(next_id, "A", "1")])
    assert seen == sorted(seen)
    assert seen == [1, 2, 3]


async def test_unmapped_events_do_not_block_the_cursor(db, driver, cursor_store, seed):
    await seed([(1, "A", "10"), (2, "ORPHAN", "10")], {"A": "W"})
    report = await driver.run_pass()
    assert report.outcome == PassOutcome.COMMITTED
    assert report.unmapped_events == 1
    assert await cursor_store.get_latest() == 2


# ==============================================================================
# Outcomes and single flight
# ==============================================================================


async def test_no_events_is_a_noop_not_an_abort(driver, cursor_store):
    report = await driver.run_pass()
    assert report.outcome == PassOutcome.NOOP
    assert await cursor_store.get_latest() is None
    assert driver.stats.noop == 1
    assert driver.stats.aborted == 0


async def test_noop_pass_finishes_through_the_committed_state(driver, monkeypatch):
    states = []
    transition = driver._transition

    def record(state):
        states.append(state)
        transition(state)

    monkeypatch.setattr(driver, "_transition", record)
    report = await driver.run_pass()

    assert report.outcome == PassOutcome.NOOP
    assert states == [PassState.RUNNING, PassState.COMMITTED, PassState.IDLE]


async def test_unexpected_error_aborts_with_internal_code(driver, network, seed):
    await seed([(1, "A", "10")], {"A": "W"})

    async def explode(payload, credential):
        raise RuntimeError("boom")

    network.submit_transfer = explode
    report = await driver.run_pass()
    assert report.outcome == PassOutcome.ABORTED
    assert report.error_code == "INTERNAL_ERROR"
    assert driver.state == PassState.IDLE


async def test_lease_held_elsewhere_skips_the_pass(driver, cursor_store, seed):
    await seed([(1, "A", "10")], {"A": "W"})
    assert await cursor_store.acquire_lease("worker-b", 60)

    report = await driver.run_pass()
    assert report.outcome == PassOutcome.SKIPPED
    assert report.skip_reason == "lease_held"
    assert await cursor_store.get_latest() is None


async def test_lease_is_released_after_the_pass(driver, cursor_store, seed):
    await seed([(1, "A", "10")], {"A": "W"})
    await driver.run_pass()
    assert await cursor_store.acquire_lease("worker-b", 60) is True


async def test_trigger_during_running_pass_is_skipped(driver, network, seed):
    await seed([(1, "A", "10")], {"A": "W"})
    entered = asyncio.Event()
    release = asyncio.Event()
    real_submit = network.submit_transfer

    async def slow_submit(payload, credential):
        entered.set()
        await release.wait()
        return await real_submit(payload, credential)

    network.submit_transfer = slow_submit
    first = asyncio.create_task(driver.run_pass())
    await asyncio.wait_for(entered.wait(), timeout=5)

    skipped = await driver.run_pass()
    assert skipped.outcome == PassOutcome.SKIPPED
    assert skipped.skip_reason == "pass_in_progress"

    release.set()
    report = await first
    assert report.outcome == PassOutcome.COMMITTED
    assert driver.stats.skipped == 1
    assert driver.stats.committed == 1
