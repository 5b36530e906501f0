"""
handlers.py
-----------
kopf wiring for the VirtualMachine controller.

kopf owns the watch stream, peering and the liveness endpoint. It does not
run our reconciliation: every change event only puts the resource key into
the work queue, and the controller's workers take it from there. Run with::

    kopf run -m fink_operator.handlers --all-namespaces

or ``python -m fink_operator``. With ``FINK_NAMESPACE`` set, run kopf with
``--namespace`` of the same value; the startup resync lists only that namespace.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict

import kopf
import kubernetes
from kopf import OperatorSettings
from kubernetes.client import ApiextensionsV1Api, CoreV1Api, CustomObjectsApi

from fink_operator.backoff import ExponentialBackoff
from fink_operator.config import ControllerConfig
from fink_operator.controller import Controller
from fink_operator.crd import ensure_crd
from fink_operator.errors import StoreError
from fink_operator.events import KubernetesEventRecorder
from fink_operator.kubevirt import MANAGED_BY, KubeVirtDriver
from fink_operator.models import VM_GROUP, VM_PLURAL, VM_VERSION, make_key
from fink_operator.reconciler import Reconciler
from fink_operator.store import KubernetesResourceStore
from fink_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)


def init_kubernetes_clients() -> tuple[CoreV1Api, CustomObjectsApi, ApiextensionsV1Api]:
    """Return (core_v1, custom_objects, apiext) after loading config."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube‑config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in‑cluster kube‑config")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise kopf.PermanentError("Cannot load Kubernetes config") from exc

    return CoreV1Api(), CustomObjectsApi(), ApiextensionsV1Api()


def build_controller(
    config: ControllerConfig,
    core_v1: CoreV1Api,
    custom_objects: CustomObjectsApi,
) -> Controller:
    api_timeout = config.api_timeout or None
    store = KubernetesResourceStore(custom_objects, namespace=config.namespace, request_timeout=api_timeout)
    driver = KubeVirtDriver(
        custom_objects,
        memory=config.vm_memory,
        request_timeout=api_timeout,
        wait_timeout=config.driver_timeout,
    )
    recorder = KubernetesEventRecorder(core_v1, component=MANAGED_BY)
    reconciler = Reconciler(
        store,
        driver,
        recorder,
        driver_timeout=config.driver_timeout,
        resync_period=config.resync_period,
        compose_hibernate=config.compose_hibernate,
    )
    queue = WorkQueue(ExponentialBackoff(config.backoff_base, config.backoff_factor, config.backoff_cap))
    return Controller(reconciler, queue, workers=config.workers)


@kopf.on.startup()
async def start_controller(settings: OperatorSettings, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Tune kopf, optionally install the CRD, and start the reconciliation workers."""
    settings.watching.server_timeout = 210  # seconds
    logger.info("Kopf watch server_timeout set to %s", settings.watching.server_timeout)

    config = ControllerConfig.from_env()
    core_v1, custom_objects, apiext = init_kubernetes_clients()
    if config.install_crd:
        await asyncio.to_thread(ensure_crd, apiext)

    controller = build_controller(config, core_v1, custom_objects)
    await controller.start()
    memo.controller = controller

    # Transitional states left behind by a previous process must be re-validated.
    try:
        keys = await asyncio.to_thread(controller.reconciler.store.list_keys)
    except StoreError as exc:
        # The initial watch listing delivers every object as well; this only gets there sooner.
        logger.warning(f"Initial resync skipped: {exc}")
    else:
        controller.resync(keys)


@kopf.on.cleanup()
async def stop_controller(memo: kopf.Memo, **_: Dict[str, object]) -> None:
    controller = getattr(memo, "controller", None)
    if controller is not None:
        await controller.stop(timeout=30)


@kopf.on.event(VM_GROUP, VM_VERSION, VM_PLURAL)
async def enqueue_virtual_machine(name: str, namespace: str, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Any change to a VirtualMachine, including its deletion, schedules a pass."""
    controller = getattr(memo, "controller", None)
    if controller is None:
        logger.warning(f"Event for {namespace}/{name} before the controller started; ignoring")
        return
    controller.enqueue(make_key(namespace, name))


@kopf.on.probe(id="workqueue")
def workqueue_depth(memo: kopf.Memo, **_: Dict[str, object]) -> Dict[str, int]:
    controller = getattr(memo, "controller", None)
    if controller is None:
        return {}
    return controller.queue.depth


@kopf.on.probe(id="reconciliations")
def reconciliation_counts(memo: kopf.Memo, **_: Dict[str, object]) -> Dict[str, int]:
    controller = getattr(memo, "controller", None)
    if controller is None:
        return {}
    return {"passes": controller.passes, "failures": controller.failures}
