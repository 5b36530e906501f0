"""
store.py
--------
Resource store backed by the Kubernetes API server.

Writes are conditional: the body we send carries the ``resourceVersion`` of
the snapshot it was derived from, so the API server answers 409 when someone
else changed the object in the meantime. That answer surfaces as
``ConflictError``.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional, Protocol

from kubernetes.client import ApiException, CustomObjectsApi

from fink_operator.errors import ConflictError, ResourceNotFoundError, StoreError
from fink_operator.models import (
    VM_API_VERSION,
    VM_GROUP,
    VM_KIND,
    VM_PLURAL,
    VM_VERSION,
    CurrentState,
    VirtualMachine,
    make_key,
)

logger = logging.getLogger(__name__)


class ResourceStore(Protocol):
    """What the reconciler needs from wherever `VirtualMachine` objects live."""

    def get(self, namespace: str, name: str) -> VirtualMachine: ...

    def list_keys(self) -> List[str]: ...

    def update_status(self, vm: VirtualMachine, state: CurrentState) -> VirtualMachine: ...

    def add_finalizer(self, vm: VirtualMachine, finalizer: str) -> VirtualMachine: ...

    def remove_finalizer(self, vm: VirtualMachine, finalizer: str) -> Optional[VirtualMachine]: ...


def _translate(exc: ApiException, action: str, key: str) -> StoreError:
    if exc.status == 409:
        return ConflictError(f"{action} {key}: stale resourceVersion ({exc.reason})")
    if exc.status in (404, 410):
        return ResourceNotFoundError(f"{action} {key}: not found")
    return StoreError(f"{action} {key} failed: {exc.status} {exc.reason}")


class KubernetesResourceStore:
    """``ResourceStore`` over ``CustomObjectsApi`` for ``codesandbox.io/v1alpha1``."""

    def __init__(
        self,
        api: CustomObjectsApi,
        *,
        namespace: Optional[str] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self._api = api
        self._namespace = namespace
        self._request_timeout = request_timeout

    def _kwargs(self) -> Dict[str, Any]:
        return {"_request_timeout": self._request_timeout} if self._request_timeout else {}

    def get(self, namespace: str, name: str) -> VirtualMachine:
        key = make_key(namespace, name)
        try:
            body = self._api.get_namespaced_custom_object(
                VM_GROUP, VM_VERSION, namespace, VM_PLURAL, name, **self._kwargs()
            )
        except ApiException as exc:
            raise _translate(exc, "get", key) from exc
        return VirtualMachine.from_body(body)

    def list_keys(self) -> List[str]:
        """Keys of every VirtualMachine in the watched namespace, or cluster-wide."""
        try:
            if self._namespace:
                result = self._api.list_namespaced_custom_object(
                    VM_GROUP, VM_VERSION, self._namespace, VM_PLURAL, **self._kwargs()
                )
            else:
                result = self._api.list_cluster_custom_object(VM_GROUP, VM_VERSION, VM_PLURAL, **self._kwargs())
        except ApiException as exc:
            raise StoreError(f"list {VM_PLURAL} failed: {exc.status} {exc.reason}") from exc

        keys = []
        for item in result.get("items", []):
            meta = item.get("metadata", {})
            if meta.get("namespace") and meta.get("name"):
                keys.append(make_key(meta["namespace"], meta["name"]))
            else:
                logger.warning("Skipping VirtualMachine without namespace/name in list result")
        return keys

    def update_status(self, vm: VirtualMachine, state: CurrentState) -> VirtualMachine:
        body = copy.deepcopy(vm.body) if vm.body else {
            "apiVersion": VM_API_VERSION,
            "kind": VM_KIND,
            "metadata": {"name": vm.name, "namespace": vm.namespace},
        }
        body.setdefault("metadata", {})["resourceVersion"] = vm.resource_version
        body["status"] = {"state": state.value}
        try:
            updated = self._api.replace_namespaced_custom_object_status(
                VM_GROUP, VM_VERSION, vm.namespace, VM_PLURAL, vm.name, body, **self._kwargs()
            )
        except ApiException as exc:
            raise _translate(exc, "update status of", vm.key) from exc
        return VirtualMachine.from_body(updated)

    def add_finalizer(self, vm: VirtualMachine, finalizer: str) -> VirtualMachine:
        if finalizer in vm.finalizers:
            return vm
        return self._patch_finalizers(vm, [*vm.finalizers, finalizer])

    def remove_finalizer(self, vm: VirtualMachine, finalizer: str) -> Optional[VirtualMachine]:
        """Drop *finalizer*; returns ``None`` if the object is already gone."""
        if finalizer not in vm.finalizers:
            return vm
        remaining = [f for f in vm.finalizers if f != finalizer]
        try:
            return self._patch_finalizers(vm, remaining)
        except ResourceNotFoundError:
            logger.debug(f"{vm.key} vanished while removing finalizer {finalizer}")
            return None

    def _patch_finalizers(self, vm: VirtualMachine, finalizers: List[str]) -> VirtualMachine:
        # resourceVersion in a merge patch acts as a precondition.
        patch_body = {
            "metadata": {
                "finalizers": finalizers or None,
                "resourceVersion": vm.resource_version,
            }
        }
        try:
            updated = self._api.patch_namespaced_custom_object(
                VM_GROUP, VM_VERSION, vm.namespace, VM_PLURAL, vm.name, patch_body, **self._kwargs()
            )
        except ApiException as exc:
            raise _translate(exc, "patch finalizers of", vm.key) from exc
        return VirtualMachine.from_body(updated)
