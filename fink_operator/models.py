"""
models.py
---------
Data model for the `VirtualMachine` custom resource and the lifecycle state
machine it implies.

The API server hands us plain dicts; ``VirtualMachine.from_body`` turns one
into an immutable snapshot taken at a single ``resourceVersion``. Everything
the reconciler decides is derived from such a snapshot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from fink_operator.errors import InvalidResourceError, UnsupportedTransitionError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resource coordinates -------------------------------------------------------
# ---------------------------------------------------------------------------
VM_GROUP = "codesandbox.io"
VM_VERSION = "v1alpha1"
VM_PLURAL = "virtualmachines"
VM_KIND = "VirtualMachine"
VM_API_VERSION = f"{VM_GROUP}/{VM_VERSION}"

VIRTUAL_MACHINE_FINALIZER = "vm.codesandbox.io"


# ---------------------------------------------------------------------------
# Enums ----------------------------------------------------------------------
# ---------------------------------------------------------------------------
class DesiredState(str, Enum):
    """Steady states a user may request in ``spec.state``."""

    STOPPED = "STOPPED"
    STARTED = "STARTED"
    HIBERNATED = "HIBERNATED"

    def as_current(self) -> "CurrentState":
        return CurrentState(self.value)


class CurrentState(str, Enum):
    """Observed lifecycle states reported in ``status.state``."""

    STOPPED = "STOPPED"
    STOPPING = "STOPPING"
    STARTED = "STARTED"
    STARTING = "STARTING"
    HIBERNATING = "HIBERNATING"
    HIBERNATED = "HIBERNATED"

    @property
    def is_transitional(self) -> bool:
        return self in TRANSITIONAL_TARGETS

    @property
    def target(self) -> "CurrentState":
        """Steady state a transitional value settles into (steady values map to themselves)."""
        return TRANSITIONAL_TARGETS.get(self, self)


class Operation(str, Enum):
    """Runtime driver calls that change the power state of a VM."""

    POWER_ON = "powerOn"
    POWER_OFF = "powerOff"
    HIBERNATE = "hibernate"
    RESUME = "resume"


TRANSITIONAL_TARGETS: Dict[CurrentState, CurrentState] = {
    CurrentState.STARTING: CurrentState.STARTED,
    CurrentState.STOPPING: CurrentState.STOPPED,
    CurrentState.HIBERNATING: CurrentState.HIBERNATED,
}

STEADY_STATES = frozenset({CurrentState.STOPPED, CurrentState.STARTED, CurrentState.HIBERNATED})


# ---------------------------------------------------------------------------
# Transition table -----------------------------------------------------------
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Transition:
    """One driver call together with the status values written around it."""

    operation: Operation
    source: CurrentState
    intermediate: CurrentState
    final: CurrentState


# (desired, current) -> (operation, intermediate, final)
_TRANSITIONS: Dict[Tuple[DesiredState, CurrentState], Tuple[Operation, CurrentState, CurrentState]] = {
    (DesiredState.STARTED, CurrentState.STOPPED): (Operation.POWER_ON, CurrentState.STARTING, CurrentState.STARTED),
    (DesiredState.STARTED, CurrentState.HIBERNATED): (Operation.RESUME, CurrentState.STARTING, CurrentState.STARTED),
    (DesiredState.STOPPED, CurrentState.STARTED): (Operation.POWER_OFF, CurrentState.STOPPING, CurrentState.STOPPED),
    (DesiredState.STOPPED, CurrentState.HIBERNATED): (Operation.POWER_OFF, CurrentState.STOPPING, CurrentState.STOPPED),
    (DesiredState.HIBERNATED, CurrentState.STARTED): (Operation.HIBERNATE, CurrentState.HIBERNATING, CurrentState.HIBERNATED),
}


def plan_transition(
    current: CurrentState,
    desired: DesiredState,
    *,
    compose_via_started: bool = True,
) -> Optional[Transition]:
    """Return the next transition from steady *current* toward *desired*.

    ``None`` means the resource has already converged. There is no hibernate
    primitive for a stopped VM, so STOPPED -> HIBERNATED is a two-hop path
    whose first hop powers the VM on; with ``compose_via_started=False`` that
    path raises ``UnsupportedTransitionError`` instead.
    """
    if current.is_transitional:
        raise ValueError(f"cannot plan a transition from transitional state {current.value}")
    if current == desired.as_current():
        return None

    entry = _TRANSITIONS.get((desired, current))
    if entry is None and desired == DesiredState.HIBERNATED and current == CurrentState.STOPPED:
        if not compose_via_started:
            raise UnsupportedTransitionError(
                f"no direct transition from {current.value} to {desired.value}"
            )
        entry = _TRANSITIONS[(DesiredState.STARTED, CurrentState.STOPPED)]
    if entry is None:
        raise UnsupportedTransitionError(f"no transition from {current.value} to {desired.value}")

    operation, intermediate, final = entry
    return Transition(operation=operation, source=current, intermediate=intermediate, final=final)


# ---------------------------------------------------------------------------
# Resource snapshot ----------------------------------------------------------
# ---------------------------------------------------------------------------
def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> Tuple[str, str]:
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise ValueError(f"malformed resource key '{key}'")
    return namespace, name


@dataclass(frozen=True)
class VirtualMachine:
    """Immutable view of one stored `VirtualMachine` at a single resourceVersion."""

    namespace: str
    name: str
    resource_version: str
    image: str
    desired_state: DesiredState
    state: Optional[CurrentState] = None
    uid: Optional[str] = None
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "VirtualMachine":
        """Parse an API object; raise ``InvalidResourceError`` if ``spec`` is unusable."""
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        status = body.get("status") or {}
        namespace = meta.get("namespace")
        name = meta.get("name")
        if not namespace or not name:
            raise InvalidResourceError("VirtualMachine object without namespace/name")

        image = spec.get("image")
        if not isinstance(image, str) or not image:
            raise InvalidResourceError(f"{namespace}/{name}: spec.image must be a non-empty string")
        try:
            desired = DesiredState(spec.get("state"))
        except ValueError as exc:
            raise InvalidResourceError(
                f"{namespace}/{name}: unsupported spec.state {spec.get('state')!r}"
            ) from exc

        raw_state = status.get("state")
        state: Optional[CurrentState] = None
        if raw_state is not None:
            try:
                state = CurrentState(raw_state)
            except ValueError:
                # Never trust a stored value we cannot read; re-derive it from the driver.
                logger.warning(f"{namespace}/{name}: ignoring unreadable status.state {raw_state!r}")

        return cls(
            namespace=namespace,
            name=name,
            resource_version=str(meta.get("resourceVersion", "")),
            image=image,
            desired_state=desired,
            state=state,
            uid=meta.get("uid"),
            finalizers=tuple(meta.get("finalizers") or ()),
            deletion_timestamp=meta.get("deletionTimestamp"),
            body=body,
        )

    def object_reference(self) -> Dict[str, Any]:
        """Reference used as ``involvedObject`` of Kubernetes events."""
        ref = {
            "apiVersion": VM_API_VERSION,
            "kind": VM_KIND,
            "namespace": self.namespace,
            "name": self.name,
            "resourceVersion": self.resource_version,
        }
        if self.uid:
            ref["uid"] = self.uid
        return ref
