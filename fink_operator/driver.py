"""Runtime driver interface consumed by the reconciler."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from fink_operator.models import CurrentState, Operation, VirtualMachine

logger = logging.getLogger(__name__)


class PowerState(str, Enum):
    """What the runtime reports for a concrete VM."""

    STOPPED = "STOPPED"
    STARTED = "STARTED"
    HIBERNATED = "HIBERNATED"
    POWERING_ON = "POWERING_ON"
    POWERING_OFF = "POWERING_OFF"
    HIBERNATING = "HIBERNATING"
    RESUMING = "RESUMING"
    UNKNOWN = "UNKNOWN"

    @property
    def in_progress(self) -> bool:
        return self in _IN_PROGRESS_STATUS

    def as_status(self) -> Optional[CurrentState]:
        """Status value that reflects this observation, ``None`` for UNKNOWN."""
        if self in _STEADY_STATUS:
            return _STEADY_STATUS[self]
        return _IN_PROGRESS_STATUS.get(self)


_STEADY_STATUS: Dict[PowerState, CurrentState] = {
    PowerState.STOPPED: CurrentState.STOPPED,
    PowerState.STARTED: CurrentState.STARTED,
    PowerState.HIBERNATED: CurrentState.HIBERNATED,
}

_IN_PROGRESS_STATUS: Dict[PowerState, CurrentState] = {
    PowerState.POWERING_ON: CurrentState.STARTING,
    PowerState.RESUMING: CurrentState.STARTING,
    PowerState.POWERING_OFF: CurrentState.STOPPING,
    PowerState.HIBERNATING: CurrentState.HIBERNATING,
}


class RuntimeDriver:
    """Power operations against the VM that backs a `VirtualMachine` resource.

    Every method blocks until the runtime answers. Operations return ``None``
    once ``query_state`` would report their target state and raise a subclass
    of ``DriverError`` otherwise; the caller owns the timeout. A VM that does
    not exist yet must be reported as ``PowerState.STOPPED``.
    """

    def power_on(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    def power_off(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    def hibernate(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    def resume(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    def query_state(self, vm: VirtualMachine) -> PowerState:
        raise NotImplementedError

    def release(self, vm: VirtualMachine) -> None:
        """Free whatever the runtime holds for *vm*; called before the resource is removed."""
        if self.query_state(vm) != PowerState.STOPPED:
            logger.info(f"Powering off {vm.key} before release")
            self.power_off(vm)

    def perform(self, operation: Operation, vm: VirtualMachine) -> None:
        """Dispatch one of the transition operations."""
        handler = {
            Operation.POWER_ON: self.power_on,
            Operation.POWER_OFF: self.power_off,
            Operation.HIBERNATE: self.hibernate,
            Operation.RESUME: self.resume,
        }[operation]
        handler(vm)
