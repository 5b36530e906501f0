"""
reconciler.py
-------------
State machine that moves ``status.state`` of one `VirtualMachine` toward its
``spec.state``, one transition per pass.

A pass
~~~~~~
1. Read the object once. Deleting objects are released and unblocked.
2. No status yet: ask the driver, record what it reports, requeue.
3. Converged: nothing to do (no driver call, no write).
4. Transitional status: a driver call may be in flight, possibly from a
   previous process. Only ``query_state`` is allowed here; the action is
   never re-issued.
5. Steady but not converged: write the intermediate status first, then call
   the driver, then write the final status.

Every write is conditional on the version this pass last saw. A rejected
write raises ``ConflictError`` and ends the pass; step 4 sorts out whatever
the driver did meanwhile.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from fink_operator.driver import PowerState, RuntimeDriver
from fink_operator.errors import (
    CorruptStateError,
    DriverOperationError,
    DriverTimeoutError,
    DriverUnavailableError,
    InvalidResourceError,
    UnsupportedTransitionError,
)
from fink_operator.models import (
    VIRTUAL_MACHINE_FINALIZER,
    CurrentState,
    VirtualMachine,
    plan_transition,
    split_key,
)
from fink_operator.store import ResourceStore

logger = logging.getLogger(__name__)


class Requeue(str, Enum):
    NONE = "none"
    IMMEDIATE = "immediate"
    BACKOFF = "backoff"
    AFTER = "after"


@dataclass(frozen=True)
class Result:
    """What the worker should do with the key once the pass is over."""

    requeue: Requeue = Requeue.NONE
    delay: Optional[float] = None

    @classmethod
    def done(cls) -> "Result":
        return cls()

    @classmethod
    def immediately(cls) -> "Result":
        return cls(Requeue.IMMEDIATE)

    @classmethod
    def backoff(cls) -> "Result":
        return cls(Requeue.BACKOFF)

    @classmethod
    def after(cls, delay: float) -> "Result":
        if delay <= 0:
            return cls.done()
        return cls(Requeue.AFTER, delay)


class EventRecorder(Protocol):
    """Interface of ``fink_operator.events.KubernetesEventRecorder``."""

    def normal(self, vm: VirtualMachine, reason: str, message: str) -> None: ...

    def warning(self, vm: VirtualMachine, reason: str, message: str) -> None: ...


class Reconciler:
    def __init__(
        self,
        store: ResourceStore,
        driver: RuntimeDriver,
        recorder: EventRecorder,
        *,
        driver_timeout: float = 120.0,
        resync_period: float = 300.0,
        compose_hibernate: bool = True,
        finalizer: str = VIRTUAL_MACHINE_FINALIZER,
    ) -> None:
        self._store = store
        self._driver = driver
        self._recorder = recorder
        self._driver_timeout = driver_timeout
        self._resync_period = resync_period
        self._compose_hibernate = compose_hibernate
        self._finalizer = finalizer

    @property
    def store(self) -> ResourceStore:
        return self._store

    # -- entry points ----------------------------------------------------------
    async def reconcile(self, key: str) -> Result:
        """Run one pass for *key*; ``ResourceNotFoundError`` propagates if it is gone."""
        namespace, name = split_key(key)
        try:
            vm = await asyncio.to_thread(self._store.get, namespace, name)
        except InvalidResourceError as exc:
            # Without a parsed object there is nothing to attach an event to.
            logger.error(f"Skipping {key}: {exc}")
            return Result.done()
        return await self.reconcile_resource(vm)

    async def reconcile_resource(self, vm: VirtualMachine) -> Result:
        """Run one pass against an already-read snapshot."""
        if vm.is_deleting:
            return await self._finalize(vm)

        if self._finalizer not in vm.finalizers:
            vm = await asyncio.to_thread(self._store.add_finalizer, vm, self._finalizer)
            logger.debug(f"Added finalizer {self._finalizer} to {vm.key}")

        state = vm.state
        if state is None:
            return await self._initialize(vm)
        if state.is_transitional:
            return await self._resolve_in_flight(vm, state)
        if state == vm.desired_state.as_current():
            logger.debug(f"{vm.key} is {state.value} as desired")
            return Result.after(self._resync_period)
        return await self._transition(vm, state)

    # -- pass variants ---------------------------------------------------------
    async def _initialize(self, vm: VirtualMachine) -> Result:
        state = (await self._query(vm)).as_status()
        await self._write_status(vm, state)
        await self._record(vm, "normal", "StateObserved", f"Observed initial state {state.value}")
        return Result.immediately()

    async def _resolve_in_flight(self, vm: VirtualMachine, state: CurrentState) -> Result:
        target = state.target
        observed = await self._query(vm)

        if observed.in_progress:
            logger.info(f"{vm.key}: {state.value} still in progress ({observed.value})")
            return Result.backoff()

        settled = observed.as_status()
        if settled == target:
            vm = await self._write_status(vm, target)
            await self._record(vm, "normal", "TransitionCompleted", f"VM is {target.value}")
            return self._after_settling(vm, target)

        # The operation behind the transitional status did not happen or failed.
        await self._write_status(vm, settled)
        message = f"{state.value} did not reach {target.value}; runtime reports {settled.value}"
        await self._record(vm, "warning", "TransitionFailed", message)
        raise DriverOperationError(f"{vm.key}: {message}")

    async def _transition(self, vm: VirtualMachine, current: CurrentState) -> Result:
        try:
            transition = plan_transition(current, vm.desired_state, compose_via_started=self._compose_hibernate)
        except UnsupportedTransitionError as exc:
            logger.warning(f"{vm.key}: {exc}")
            await self._record(vm, "warning", "UnsupportedTransition", str(exc))
            return Result.done()
        if transition is None:
            return Result.after(self._resync_period)

        if transition.final != vm.desired_state.as_current():
            logger.info(
                f"{vm.key}: {vm.desired_state.value} is not reachable from {current.value} directly; "
                f"going through {transition.final.value}"
            )

        vm = await self._write_status(vm, transition.intermediate)
        await self._record(
            vm, "normal", "TransitionStarted", f"{transition.operation.value}: {transition.source.value} -> {transition.final.value}"
        )
        try:
            await self._call_driver(transition.operation.value, self._driver.perform, transition.operation, vm)
        except (DriverTimeoutError, DriverUnavailableError) as exc:
            logger.warning(f"{vm.key}: {transition.operation.value} outcome unknown, staying {transition.intermediate.value}: {exc}")
            raise
        except DriverOperationError as exc:
            await self._write_status(vm, transition.source)
            await self._record(vm, "warning", "TransitionFailed", f"{transition.operation.value} failed: {exc}")
            raise

        vm = await self._write_status(vm, transition.final)
        await self._record(vm, "normal", "TransitionCompleted", f"VM is {transition.final.value}")
        return self._after_settling(vm, transition.final)

    async def _finalize(self, vm: VirtualMachine) -> Result:
        if self._finalizer not in vm.finalizers:
            return Result.done()
        logger.info(f"Releasing VM for deleted resource {vm.key}")
        try:
            await self._call_driver("release", self._driver.release, vm)
        except DriverOperationError as exc:
            await self._record(vm, "warning", "ReleaseFailed", str(exc))
            raise
        await asyncio.to_thread(self._store.remove_finalizer, vm, self._finalizer)
        await self._record(vm, "normal", "Released", "VM released, finalizer removed")
        return Result.done()

    # -- helpers ---------------------------------------------------------------
    def _after_settling(self, vm: VirtualMachine, state: CurrentState) -> Result:
        if state == vm.desired_state.as_current():
            return Result.after(self._resync_period)
        # An intermediate hop, or spec moved on while we were busy.
        return Result.immediately()

    async def _query(self, vm: VirtualMachine) -> PowerState:
        observed: Any = await self._call_driver("queryState", self._driver.query_state, vm)
        if not isinstance(observed, PowerState):
            try:
                observed = PowerState(observed)
            except ValueError as exc:
                raise CorruptStateError(f"{vm.key}: unrecognised runtime state {observed!r}", operation="queryState") from exc
        if observed == PowerState.UNKNOWN:
            raise CorruptStateError(f"{vm.key}: runtime state is unknown", operation="queryState")
        return observed

    async def _call_driver(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._driver_timeout)
        except asyncio.TimeoutError as exc:
            raise DriverTimeoutError(
                f"{operation} did not answer within {self._driver_timeout}s", operation=operation
            ) from exc

    async def _write_status(self, vm: VirtualMachine, state: CurrentState) -> VirtualMachine:
        updated = await asyncio.to_thread(self._store.update_status, vm, state)
        previous = vm.state.value if vm.state else "<none>"
        logger.info(f"{vm.key}: status {previous} -> {state.value}")
        return updated

    async def _record(self, vm: VirtualMachine, kind: str, reason: str, message: str) -> None:
        post = self._recorder.warning if kind == "warning" else self._recorder.normal
        await asyncio.to_thread(post, vm, reason, message)
