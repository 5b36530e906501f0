"""Kubernetes events: the only channel through which users see why a VM did not converge."""
from __future__ import annotations

import logging
import socket
from datetime import UTC, datetime

from kubernetes.client import ApiException, CoreV1Api

from fink_operator.models import VirtualMachine

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1024


class KubernetesEventRecorder:
    """Posts core/v1 ``Event`` objects attached to a `VirtualMachine`."""

    def __init__(self, api: CoreV1Api, component: str = "fink-operator", instance: str | None = None) -> None:
        self._api = api
        self._component = component
        self._instance = instance or socket.gethostname()

    def normal(self, vm: VirtualMachine, reason: str, message: str) -> None:
        self._post(vm, "Normal", reason, message)

    def warning(self, vm: VirtualMachine, reason: str, message: str) -> None:
        self._post(vm, "Warning", reason, message)

    def _post(self, vm: VirtualMachine, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{vm.name}.", "namespace": vm.namespace},
            "involvedObject": vm.object_reference(),
            "type": event_type,
            "reason": reason,
            "message": message[:MAX_MESSAGE_LENGTH],
            "source": {"component": self._component, "host": self._instance},
            "reportingComponent": self._component,
            "reportingInstance": self._instance,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self._api.create_namespaced_event(vm.namespace, body)
        except ApiException as exc:
            # Events are informational; failing to post one must not fail the pass.
            logger.warning(f"Could not post {reason} event for {vm.key}: {exc.status} {exc.reason}")
