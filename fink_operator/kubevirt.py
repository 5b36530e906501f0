"""
kubevirt.py
-----------
Runtime driver that backs every `codesandbox.io` VirtualMachine with a KubeVirt
``VirtualMachine`` of the same name and namespace.

Mapping
~~~~~~~
* power on   → create the KubeVirt VM (``runStrategy: Always``) or patch it to Always
* power off  → patch ``runStrategy: Halted``
* hibernate  → ``PUT subresources.kubevirt.io/.../pause`` on the running VMI
* resume     → ``unpause`` when a paused VMI exists, otherwise power on
* release    → delete the KubeVirt VM

``query_state`` reads the run strategy of the VM and the phase and ``Paused``
condition of its VMI. The four power operations return only once
``query_state`` reports their target; after ``wait_timeout`` seconds they raise
``DriverTimeoutError`` and leave the VM to get there (or not) on its own.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import urllib3
from kubernetes.client import ApiException, CustomObjectsApi

from fink_operator.driver import PowerState, RuntimeDriver
from fink_operator.errors import DriverError, DriverOperationError, DriverTimeoutError, DriverUnavailableError
from fink_operator.models import VirtualMachine

logger = logging.getLogger(__name__)

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_VM_PLURAL = "virtualmachines"
KUBEVIRT_VMI_PLURAL = "virtualmachineinstances"
SUBRESOURCES_PATH = "/apis/subresources.kubevirt.io/v1/namespaces/{namespace}/virtualmachineinstances/{name}/{action}"

MANAGED_BY = "fink-operator"
INSTANCE_LABEL = "fink.codesandbox.io/vm"

RUNNING_STRATEGIES = {"Always", "RerunOnFailure", "Once"}
STARTING_PHASES = {"", "Pending", "Scheduling", "Scheduled"}
FINISHED_PHASES = {"Succeeded", "Failed"}


def _is_paused(vmi: Dict[str, Any]) -> bool:
    for condition in vmi.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Paused" and condition.get("status") == "True":
            return True
    return False


def _run_strategy(kubevirt_vm: Dict[str, Any]) -> str:
    spec = kubevirt_vm.get("spec", {})
    if spec.get("runStrategy"):
        return spec["runStrategy"]
    # Older objects use the boolean ``running`` field instead.
    return "Always" if spec.get("running") else "Halted"


class KubeVirtDriver(RuntimeDriver):
    def __init__(
        self,
        api: CustomObjectsApi,
        *,
        memory: str = "1Gi",
        request_timeout: Optional[float] = None,
        wait_timeout: float = 120.0,
        poll_interval: float = 2.0,
    ) -> None:
        self._api = api
        self._memory = memory
        self._request_timeout = request_timeout
        self._wait_timeout = wait_timeout
        self._poll_interval = poll_interval

    # -- operations ------------------------------------------------------------
    def power_on(self, vm: VirtualMachine) -> None:
        self._request_power_on(vm)
        self._wait_for(vm, PowerState.STARTED, "powerOn")

    def power_off(self, vm: VirtualMachine) -> None:
        if self._get_vm(vm, "powerOff") is None:
            logger.info(f"KubeVirt VM for {vm.key} does not exist; nothing to power off")
            return
        self._set_run_strategy(vm, "Halted", "powerOff")
        self._wait_for(vm, PowerState.STOPPED, "powerOff")

    def hibernate(self, vm: VirtualMachine) -> None:
        if self._get_vmi(vm, "hibernate") is None:
            raise DriverOperationError(f"{vm.key} has no running instance to hibernate", operation="hibernate")
        self._subresource(vm, "pause", "hibernate")
        self._wait_for(vm, PowerState.HIBERNATED, "hibernate")

    def resume(self, vm: VirtualMachine) -> None:
        vmi = self._get_vmi(vm, "resume")
        if vmi is not None and _is_paused(vmi):
            self._subresource(vm, "unpause", "resume")
        else:
            logger.info(f"No paused instance for {vm.key}; resuming by powering on")
            self._request_power_on(vm)
        self._wait_for(vm, PowerState.STARTED, "resume")

    def query_state(self, vm: VirtualMachine) -> PowerState:
        kubevirt_vm = self._get_vm(vm, "queryState")
        if kubevirt_vm is None:
            return PowerState.STOPPED
        strategy = _run_strategy(kubevirt_vm)
        vmi = self._get_vmi(vm, "queryState")

        if vmi is None:
            return PowerState.POWERING_ON if strategy in RUNNING_STRATEGIES else PowerState.STOPPED

        phase = vmi.get("status", {}).get("phase", "") or ""
        if strategy not in RUNNING_STRATEGIES:
            return PowerState.STOPPED if phase in FINISHED_PHASES else PowerState.POWERING_OFF
        if phase == "Running":
            return PowerState.HIBERNATED if _is_paused(vmi) else PowerState.STARTED
        if phase in STARTING_PHASES or phase == "Succeeded":
            return PowerState.POWERING_ON
        logger.warning(f"KubeVirt instance for {vm.key} is in phase {phase!r}")
        return PowerState.UNKNOWN

    def release(self, vm: VirtualMachine) -> None:
        try:
            self._api.delete_namespaced_custom_object(
                KUBEVIRT_GROUP,
                KUBEVIRT_VERSION,
                vm.namespace,
                KUBEVIRT_VM_PLURAL,
                vm.name,
                **self._kwargs(),
            )
            logger.info(f"Deleted KubeVirt VM for {vm.key}")
        except ApiException as exc:
            if exc.status in (404, 410):
                logger.info(f"KubeVirt VM for {vm.key} already deleted or not found")
                return
            raise self._translate(exc, "release", vm) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise DriverUnavailableError(f"release {vm.key}: {exc}", operation="release") from exc

    # -- helpers ---------------------------------------------------------------
    def _request_power_on(self, vm: VirtualMachine) -> None:
        if self._get_vm(vm, "powerOn") is not None:
            self._set_run_strategy(vm, "Always", "powerOn")
            return
        logger.info(f"Creating KubeVirt VM for {vm.key} from image {vm.image}")
        self._call(
            "powerOn",
            vm,
            self._api.create_namespaced_custom_object,
            KUBEVIRT_GROUP,
            KUBEVIRT_VERSION,
            vm.namespace,
            KUBEVIRT_VM_PLURAL,
            self._manifest(vm),
        )

    def _wait_for(self, vm: VirtualMachine, target: PowerState, operation: str) -> None:
        # The API server accepts a change long before KubeVirt acts on it.
        deadline = time.monotonic() + self._wait_timeout
        while True:
            observed = self.query_state(vm)
            if observed == target:
                return
            if time.monotonic() >= deadline:
                raise DriverTimeoutError(
                    f"{vm.key} still {observed.value} {self._wait_timeout}s after {operation}",
                    operation=operation,
                )
            time.sleep(self._poll_interval)

    def _kwargs(self) -> Dict[str, Any]:
        return {"_request_timeout": self._request_timeout} if self._request_timeout else {}

    def _manifest(self, vm: VirtualMachine) -> Dict[str, Any]:
        labels = {"managed-by": MANAGED_BY, INSTANCE_LABEL: vm.name}
        return {
            "apiVersion": f"{KUBEVIRT_GROUP}/{KUBEVIRT_VERSION}",
            "kind": "VirtualMachine",
            "metadata": {"name": vm.name, "namespace": vm.namespace, "labels": labels},
            "spec": {
                "runStrategy": "Always",
                "template": {
                    "metadata": {"labels": {**labels, "kubevirt.io/domain": vm.name}},
                    "spec": {
                        "domain": {
                            "devices": {"disks": [{"name": "rootdisk", "disk": {"bus": "virtio"}}]},
                            "resources": {"requests": {"memory": self._memory}},
                        },
                        "volumes": [{"name": "rootdisk", "containerDisk": {"image": vm.image}}],
                    },
                },
            },
        }

    @staticmethod
    def _translate(exc: ApiException, operation: str, vm: VirtualMachine) -> DriverError:
        message = f"{operation} {vm.key}: {exc.status} {exc.reason}"
        if exc.status is None or exc.status >= 500 or exc.status == 429:
            return DriverUnavailableError(message, operation=operation)
        return DriverOperationError(message, operation=operation)

    def _call(self, operation: str, vm: VirtualMachine, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs, **self._kwargs())
        except ApiException as exc:
            raise self._translate(exc, operation, vm) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise DriverUnavailableError(f"{operation} {vm.key}: {exc}", operation=operation) from exc

    def _get_optional(self, operation: str, vm: VirtualMachine, plural: str) -> Optional[Dict[str, Any]]:
        try:
            return self._api.get_namespaced_custom_object(
                KUBEVIRT_GROUP, KUBEVIRT_VERSION, vm.namespace, plural, vm.name, **self._kwargs()
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise self._translate(exc, operation, vm) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise DriverUnavailableError(f"{operation} {vm.key}: {exc}", operation=operation) from exc

    def _get_vm(self, vm: VirtualMachine, operation: str) -> Optional[Dict[str, Any]]:
        return self._get_optional(operation, vm, KUBEVIRT_VM_PLURAL)

    def _get_vmi(self, vm: VirtualMachine, operation: str) -> Optional[Dict[str, Any]]:
        return self._get_optional(operation, vm, KUBEVIRT_VMI_PLURAL)

    def _set_run_strategy(self, vm: VirtualMachine, strategy: str, operation: str) -> None:
        # ``running: None`` clears the legacy field; both fields together are rejected.
        patch_body = {"spec": {"runStrategy": strategy, "running": None}}
        self._call(
            operation,
            vm,
            self._api.patch_namespaced_custom_object,
            KUBEVIRT_GROUP,
            KUBEVIRT_VERSION,
            vm.namespace,
            KUBEVIRT_VM_PLURAL,
            vm.name,
            patch_body,
        )
        logger.info(f"Set runStrategy={strategy} on KubeVirt VM for {vm.key}")

    def _subresource(self, vm: VirtualMachine, action: str, operation: str) -> None:
        try:
            self._api.api_client.call_api(
                SUBRESOURCES_PATH,
                "PUT",
                path_params={"namespace": vm.namespace, "name": vm.name, "action": action},
                header_params={"Content-Type": "application/json", "Accept": "application/json"},
                body={},
                auth_settings=["BearerToken"],
                _return_http_data_only=True,
                _request_timeout=self._request_timeout,
            )
        except ApiException as exc:
            if exc.status == 409:
                # KubeVirt answers 409 when the instance is already (un)paused.
                logger.info(f"{action} on {vm.key} was a no-op: {exc.reason}")
                return
            raise self._translate(exc, operation, vm) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise DriverUnavailableError(f"{operation} {vm.key}: {exc}", operation=operation) from exc
        logger.info(f"{action} issued for KubeVirt instance of {vm.key}")
