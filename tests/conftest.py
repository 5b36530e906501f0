"""Pytest configuration and in-memory stand-ins for the API server and the runtime."""

import copy
import itertools
import time
from typing import Callable, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from fink_operator.driver import PowerState, RuntimeDriver
from fink_operator.errors import ConflictError, ResourceNotFoundError
from fink_operator.models import (
    VIRTUAL_MACHINE_FINALIZER,
    VM_API_VERSION,
    VM_KIND,
    CurrentState,
    VirtualMachine,
    make_key,
)
from fink_operator.reconciler import Reconciler


class FakeClock:
    """Manually advanced replacement for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    """Versioned in-memory store with the same conflict rules as the API server."""

    def __init__(self):
        self._objects: Dict[str, dict] = {}
        self._versions = itertools.count(1)
        self.status_writes: List[Tuple[str, str]] = []

    def create(
        self,
        name: str,
        state: str = "STARTED",
        *,
        status: Optional[str] = None,
        namespace: str = "default",
        image: str = "ghcr.io/codesandbox/rootfs:latest",
        finalizers: Optional[List[str]] = None,
    ) -> str:
        body = {
            "apiVersion": VM_API_VERSION,
            "kind": VM_KIND,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "resourceVersion": str(next(self._versions)),
                "finalizers": list(finalizers or []),
            },
            "spec": {"image": image, "state": state},
        }
        if status is not None:
            body["status"] = {"state": status}
        key = make_key(namespace, name)
        self._objects[key] = body
        return key

    # -- ResourceStore ---------------------------------------------------------
    def get(self, namespace: str, name: str) -> VirtualMachine:
        return VirtualMachine.from_body(copy.deepcopy(self._stored(make_key(namespace, name))))

    def list_keys(self) -> List[str]:
        return list(self._objects)

    def update_status(self, vm: VirtualMachine, state: CurrentState) -> VirtualMachine:
        stored = self._checked(vm)
        stored["status"] = {"state": state.value}
        self._bump(stored)
        self.status_writes.append((vm.key, state.value))
        return VirtualMachine.from_body(copy.deepcopy(stored))

    def add_finalizer(self, vm: VirtualMachine, finalizer: str) -> VirtualMachine:
        stored = self._checked(vm)
        if finalizer not in stored["metadata"]["finalizers"]:
            stored["metadata"]["finalizers"].append(finalizer)
            self._bump(stored)
        return VirtualMachine.from_body(copy.deepcopy(stored))

    def remove_finalizer(self, vm: VirtualMachine, finalizer: str) -> Optional[VirtualMachine]:
        stored = self._checked(vm)
        stored["metadata"]["finalizers"] = [f for f in stored["metadata"]["finalizers"] if f != finalizer]
        self._bump(stored)
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"]["finalizers"]:
            del self._objects[vm.key]
            return None
        return VirtualMachine.from_body(copy.deepcopy(stored))

    # -- user side -------------------------------------------------------------
    def set_desired(self, key: str, state: str) -> None:
        stored = self._stored(key)
        stored["spec"]["state"] = state
        self._bump(stored)

    def set_image(self, key: str, image: str) -> None:
        stored = self._stored(key)
        stored["spec"]["image"] = image
        self._bump(stored)

    def touch(self, key: str) -> None:
        """Any unrelated write that moves the resourceVersion forward."""
        stored = self._stored(key)
        stored["metadata"].setdefault("labels", {})["touched"] = "yes"
        self._bump(stored)

    def delete(self, key: str) -> None:
        stored = self._stored(key)
        if stored["metadata"]["finalizers"]:
            stored["metadata"]["deletionTimestamp"] = "2026-10-18T00:00:00Z"
            self._bump(stored)
        else:
            del self._objects[key]

    def state_of(self, key: str) -> Optional[str]:
        return (self._stored(key).get("status") or {}).get("state")

    def exists(self, key: str) -> bool:
        return key in self._objects

    # -- internals -------------------------------------------------------------
    def _stored(self, key: str) -> dict:
        try:
            return self._objects[key]
        except KeyError:
            raise ResourceNotFoundError(f"{key}: not found") from None

    def _checked(self, vm: VirtualMachine) -> dict:
        stored = self._stored(vm.key)
        if stored["metadata"]["resourceVersion"] != vm.resource_version:
            raise ConflictError(
                f"{vm.key}: have {vm.resource_version}, store has {stored['metadata']['resourceVersion']}"
            )
        return stored

    def _bump(self, stored: dict) -> None:
        stored["metadata"]["resourceVersion"] = str(next(self._versions))


class FakeDriver(RuntimeDriver):
    """Scripted runtime: operations flip ``state`` unless told to fail or hang."""

    def __init__(self, state: PowerState = PowerState.STOPPED):
        self.state = state
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.hang: Dict[str, float] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.query_result: Optional[object] = None
        self.released: List[str] = []

    def power_on(self, vm):
        self._operate("powerOn", PowerState.STARTED)

    def power_off(self, vm):
        self._operate("powerOff", PowerState.STOPPED)

    def hibernate(self, vm):
        self._operate("hibernate", PowerState.HIBERNATED)

    def resume(self, vm):
        self._operate("resume", PowerState.STARTED)

    def query_state(self, vm):
        self.calls.append("queryState")
        if self.query_result is not None:
            return self.query_result
        return self.state

    def release(self, vm):
        self.calls.append("release")
        self._maybe_fail("release")
        self.released.append(vm.key)
        self.state = PowerState.STOPPED

    @property
    def actions(self) -> List[str]:
        return [call for call in self.calls if call != "queryState"]

    def _operate(self, name: str, result: PowerState) -> None:
        self.calls.append(name)
        if name in self.hang:
            # Outlives the caller's timeout and leaves the VM untouched.
            time.sleep(self.hang[name])
            return
        self._maybe_fail(name)
        self.state = result
        if name in self.hooks:
            self.hooks[name]()

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]




class FakeKubeVirtCluster:
    """KubeVirt objects behind a ``MagicMock`` ``CustomObjectsApi``.

    Like the real thing, an instance shows up a few reads after the VM is told
    to run and goes away a few reads after it is halted. ``boot_reads=None``
    leaves a new instance Pending forever.
    """

    VM = "virtualmachines"
    VMI = "virtualmachineinstances"

    def __init__(self, boot_reads: Optional[int] = 2, shutdown_reads: int = 2):
        self.boot_reads = boot_reads
        self.shutdown_reads = shutdown_reads
        self.objects: Dict[str, Dict[Tuple[str, str], dict]] = {self.VM: {}, self.VMI: {}}
        self._pending: Dict[Tuple[str, str], List] = {}
        self.api = MagicMock()
        self.api.get_namespaced_custom_object.side_effect = self.get
        self.api.create_namespaced_custom_object.side_effect = self.create
        self.api.patch_namespaced_custom_object.side_effect = self.patch
        self.api.delete_namespaced_custom_object.side_effect = self.delete
        self.api.api_client.call_api.side_effect = self.call_api

    # -- seeding ---------------------------------------------------------------
    def add_vm(self, body: dict, name: str = "vm-a", namespace: str = "default") -> None:
        self.objects[self.VM][(namespace, name)] = copy.deepcopy(body)

    def add_vmi(self, body: dict, name: str = "vm-a", namespace: str = "default") -> None:
        self.objects[self.VMI][(namespace, name)] = copy.deepcopy(body)

    def phase(self, name: str = "vm-a", namespace: str = "default") -> Optional[str]:
        vmi = self.objects[self.VMI].get((namespace, name))
        return vmi["status"]["phase"] if vmi else None

    # -- CustomObjectsApi ------------------------------------------------------
    def get(self, group, version, namespace, plural, name, **kwargs):
        key = (namespace, name)
        if plural == self.VMI:
            self._tick(key)
        obj = self.objects[plural].get(key)
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def create(self, group, version, namespace, plural, body, **kwargs):
        key = (namespace, body["metadata"]["name"])
        if key in self.objects[plural]:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[plural][key] = copy.deepcopy(body)
        self._settle(key)
        return body

    def patch(self, group, version, namespace, plural, name, body, **kwargs):
        key = (namespace, name)
        obj = self.objects[plural].get(key)
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        spec = obj.setdefault("spec", {})
        for field, value in body.get("spec", {}).items():
            if value is None:
                spec.pop(field, None)
            else:
                spec[field] = value
        self._settle(key)
        return copy.deepcopy(obj)

    def delete(self, group, version, namespace, plural, name, **kwargs):
        key = (namespace, name)
        if self.objects[plural].pop(key, None) is None:
            raise ApiException(status=404, reason="Not Found")
        self.objects[self.VMI].pop(key, None)
        self._pending.pop(key, None)

    def call_api(self, path, method, path_params=None, **kwargs):
        key = (path_params["namespace"], path_params["name"])
        vmi = self.objects[self.VMI].get(key)
        if vmi is None:
            raise ApiException(status=404, reason="Not Found")
        conditions = vmi["status"].setdefault("conditions", [])
        paused = any(c["type"] == "Paused" for c in conditions)
        if path_params["action"] == "pause":
            if paused:
                raise ApiException(status=409, reason="VMI is already paused")
            conditions.append({"type": "Paused", "status": "True"})
        else:
            if not paused:
                raise ApiException(status=409, reason="VMI is not paused")
            vmi["status"]["conditions"] = [c for c in conditions if c["type"] != "Paused"]

    # -- internals -------------------------------------------------------------
    def _settle(self, key: Tuple[str, str]) -> None:
        strategy = self.objects[self.VM][key].get("spec", {}).get("runStrategy")
        vmi = self.objects[self.VMI].get(key)
        if strategy == "Always" and vmi is None:
            self.objects[self.VMI][key] = {"metadata": {"name": key[1]}, "status": {"phase": "Pending"}}
            if self.boot_reads is not None:
                self._pending[key] = [self.boot_reads, "boot"]
        elif strategy == "Halted" and vmi is not None:
            self._pending[key] = [self.shutdown_reads, "halt"]

    def _tick(self, key: Tuple[str, str]) -> None:
        entry = self._pending.get(key)
        if entry is None:
            return
        entry[0] -= 1
        if entry[0] > 0:
            return
        del self._pending[key]
        if entry[1] == "boot":
            self.objects[self.VMI][key]["status"]["phase"] = "Running"
        else:
            self.objects[self.VMI].pop(key, None)


class FakeRecorder:
    def __init__(self):
        self.events: List[Tuple[str, str, str, str]] = []

    def normal(self, vm, reason, message):
        self.events.append((vm.key, "Normal", reason, message))

    def warning(self, vm, reason, message):
        self.events.append((vm.key, "Warning", reason, message))

    def reasons(self, event_type: Optional[str] = None) -> List[str]:
        return [reason for _, kind, reason, _ in self.events if event_type in (None, kind)]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reconciler(store, driver, recorder) -> Reconciler:
    return Reconciler(store, driver, recorder, driver_timeout=0.2, resync_period=300.0)


@pytest.fixture
def finalizers() -> List[str]:
    return [VIRTUAL_MACHINE_FINALIZER]


@pytest.fixture
def kubevirt() -> FakeKubeVirtCluster:
    return FakeKubeVirtCluster()
