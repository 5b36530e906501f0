import asyncio
from typing import Dict, List

import pytest

from fink_operator.backoff import ExponentialBackoff
from fink_operator.controller import Controller
from fink_operator.errors import (
    ConflictError,
    CorruptStateError,
    DriverTimeoutError,
    ResourceNotFoundError,
)
from fink_operator.reconciler import Reconciler, Result
from fink_operator.workqueue import WorkQueue


class ScriptedReconciler:
    """Returns (or raises) whatever was scripted for the key."""

    def __init__(self, outcomes: Dict[str, object]):
        self.outcomes = outcomes
        self.seen: List[str] = []

    async def reconcile(self, key):
        self.seen.append(key)
        outcome = self.outcomes[key]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowReconciler:
    """Tracks how many passes run at the same time, overall and per key."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.active: Dict[str, int] = {}
        self.max_per_key = 0
        self.max_total = 0
        self.passes: List[str] = []

    async def reconcile(self, key):
        self.active[key] = self.active.get(key, 0) + 1
        self.max_per_key = max(self.max_per_key, self.active[key])
        self.max_total = max(self.max_total, sum(self.active.values()))
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active[key] -= 1
        self.passes.append(key)
        return Result.done()


@pytest.fixture
def queue(clock) -> WorkQueue:
    return WorkQueue(ExponentialBackoff(), clock=clock, poll_interval=0.01)


async def process(controller: Controller, key: str) -> None:
    controller.enqueue(key)
    assert await asyncio.wait_for(controller.process_next_item(), timeout=1.0) == key


# ===========================================
# Outcome handling
# ===========================================


@pytest.mark.asyncio
async def test_done_forgets_backoff(queue):
    controller = Controller(ScriptedReconciler({"default/a": Result.done()}), queue)
    queue.backoff.when("default/a")

    await process(controller, "default/a")

    assert queue.backoff.failures("default/a") == 0
    assert queue.pending_delay("default/a") is None
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_after_schedules_a_resync(queue):
    controller = Controller(ScriptedReconciler({"default/a": Result.after(300)}), queue)

    await process(controller, "default/a")

    assert queue.pending_delay("default/a") == 300


@pytest.mark.asyncio
async def test_immediately_puts_key_back(queue):
    controller = Controller(ScriptedReconciler({"default/a": Result.immediately()}), queue)

    await process(controller, "default/a")

    assert len(queue) == 1
    assert not queue.is_processing("default/a")


@pytest.mark.asyncio
async def test_backoff_result_grows_delay(queue):
    controller = Controller(ScriptedReconciler({"default/a": Result.backoff()}), queue)

    await process(controller, "default/a")
    assert queue.pending_delay("default/a") == 1

    await process(controller, "default/a")
    assert queue.pending_delay("default/a") == 1  # earlier deadline still pending
    assert queue.backoff.failures("default/a") == 2


@pytest.mark.asyncio
async def test_conflict_retries_without_backoff(queue):
    controller = Controller(ScriptedReconciler({"default/a": ConflictError("stale")}), queue)

    await process(controller, "default/a")

    assert len(queue) == 1
    assert queue.backoff.failures("default/a") == 0
    assert controller.failures == 0


@pytest.mark.asyncio
async def test_not_found_drops_key(queue):
    controller = Controller(ScriptedReconciler({"default/a": ResourceNotFoundError("gone")}), queue)
    queue.backoff.when("default/a")

    await process(controller, "default/a")

    assert len(queue) == 0
    assert queue.pending_delay("default/a") is None
    assert queue.backoff.failures("default/a") == 0


@pytest.mark.asyncio
async def test_corrupt_state_waits_for_cap(queue):
    controller = Controller(ScriptedReconciler({"default/a": CorruptStateError("garbage")}), queue)

    await process(controller, "default/a")

    assert queue.pending_delay("default/a") == 300
    assert controller.failures == 1


@pytest.mark.asyncio
async def test_driver_error_backs_off(queue, clock):
    controller = Controller(ScriptedReconciler({"default/a": DriverTimeoutError("slow")}), queue)

    await process(controller, "default/a")
    assert queue.pending_delay("default/a") == 1

    clock.advance(1)
    assert await asyncio.wait_for(controller.process_next_item(), timeout=1.0) == "default/a"
    assert queue.pending_delay("default/a") == 2
    assert controller.failures == 2


@pytest.mark.asyncio
async def test_unexpected_error_backs_off(queue):
    controller = Controller(ScriptedReconciler({"default/a": RuntimeError("boom")}), queue)

    await process(controller, "default/a")

    assert queue.pending_delay("default/a") == 1
    assert controller.passes == 1
    assert controller.failures == 1


def test_needs_at_least_one_worker(queue):
    with pytest.raises(ValueError):
        Controller(ScriptedReconciler({}), queue, workers=0)


# ===========================================
# Worker pool
# ===========================================


@pytest.mark.asyncio
async def test_one_pass_per_key_at_a_time(queue):
    reconciler = SlowReconciler()
    controller = Controller(reconciler, queue, workers=4)
    await controller.start()

    for _ in range(5):
        controller.enqueue("default/a")
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.3)
    await controller.stop(timeout=1.0)

    assert reconciler.max_per_key == 1
    assert len(reconciler.passes) >= 2


@pytest.mark.asyncio
async def test_different_keys_run_in_parallel(queue):
    reconciler = SlowReconciler(delay=0.1)
    controller = Controller(reconciler, queue, workers=3)
    await controller.start()

    controller.resync(["default/a", "default/b", "default/c"])
    await asyncio.sleep(0.05)
    assert controller.in_flight == 3
    await asyncio.sleep(0.2)
    await controller.stop(timeout=1.0)

    assert reconciler.max_total == 3
    assert sorted(reconciler.passes) == ["default/a", "default/b", "default/c"]


@pytest.mark.asyncio
async def test_stop_cancels_stuck_workers(queue):
    reconciler = SlowReconciler(delay=10)
    controller = Controller(reconciler, queue, workers=1)
    await controller.start()
    controller.enqueue("default/a")
    await asyncio.sleep(0.05)

    await controller.stop(timeout=0.1)

    assert reconciler.passes == []
    assert queue.shutting_down


@pytest.mark.asyncio
async def test_resync_counts_keys(queue):
    controller = Controller(ScriptedReconciler({}), queue)

    assert controller.resync(["default/a", "default/b", "default/a"]) == 3
    assert len(queue) == 2


@pytest.mark.asyncio
async def test_workers_converge_real_reconciler(store, driver, recorder):
    reconciler = Reconciler(store, driver, recorder, driver_timeout=1.0)
    queue = WorkQueue(poll_interval=0.01)
    controller = Controller(reconciler, queue, workers=2)
    started = store.create("vm-a", "STARTED")
    hibernated = store.create("vm-b", "HIBERNATED", status="STOPPED")

    await controller.start()
    controller.resync(store.list_keys())
    for _ in range(100):
        if store.state_of(started) == "STARTED" and store.state_of(hibernated) == "HIBERNATED":
            break
        await asyncio.sleep(0.01)
    await controller.stop(timeout=1.0)

    assert store.state_of(started) == "STARTED"
    assert store.state_of(hibernated) == "HIBERNATED"
