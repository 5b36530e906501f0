"""
crd.py
------
The `VirtualMachine` CustomResourceDefinition, its installer, and ``fink-crdgen``
which prints it as YAML (``fink-crdgen | kubectl apply -f -``).
"""
from __future__ import annotations

import logging
import sys

import kopf
import yaml
from kubernetes.client import ApiException, ApiextensionsV1Api

from fink_operator.models import VM_GROUP, VM_KIND, VM_PLURAL, VM_VERSION, CurrentState, DesiredState

logger = logging.getLogger(__name__)

VIRTUAL_MACHINE_CRD_MANIFEST: dict = {
    "apiVersion": "apiextensions.k8s.io/v1",
    "kind": "CustomResourceDefinition",
    "metadata": {"name": f"{VM_PLURAL}.{VM_GROUP}"},
    "spec": {
        "group": VM_GROUP,
        "names": {
            "categories": [],
            "kind": VM_KIND,
            "plural": VM_PLURAL,
            "shortNames": ["vm"],
            "singular": "virtualmachine",
        },
        "scope": "Namespaced",
        "versions": [
            {
                "additionalPrinterColumns": [
                    {
                        "description": "VM rootfs image",
                        "jsonPath": ".spec.image",
                        "name": "Image",
                        "type": "string",
                    }
                ],
                "name": VM_VERSION,
                "schema": {
                    "openAPIV3Schema": {
                        "description": "A VirtualMachine resource for FinK",
                        "properties": {
                            "spec": {
                                "properties": {
                                    "image": {"type": "string"},
                                    "state": {
                                        "enum": [s.value for s in DesiredState],
                                        "type": "string",
                                    },
                                },
                                "required": ["image", "state"],
                                "type": "object",
                            },
                            "status": {
                                "nullable": True,
                                "properties": {
                                    "state": {
                                        "enum": [s.value for s in CurrentState],
                                        "type": "string",
                                    }
                                },
                                "required": ["state"],
                                "type": "object",
                            },
                        },
                        "required": ["spec"],
                        "title": VM_KIND,
                        "type": "object",
                    }
                },
                "served": True,
                "storage": True,
                "subresources": {"status": {}},
            }
        ],
    },
}


def ensure_crd(api: ApiextensionsV1Api) -> bool:
    """Create the CRD unless it is already present; return whether it was created."""
    try:
        api.create_custom_resource_definition(body=VIRTUAL_MACHINE_CRD_MANIFEST)
        logger.info("Successfully applied VirtualMachine CRD")
        return True
    except ApiException as exc:
        if exc.status == 409:  # already present
            logger.debug("VirtualMachine CRD already present")
            return False
        if exc.status == 429:
            raise kopf.TemporaryError("API busy, retrying", delay=10) from exc
        raise kopf.PermanentError(f"CRD creation failed: {exc.status} {exc.reason}") from exc


def render_crd_yaml() -> str:
    return yaml.safe_dump(VIRTUAL_MACHINE_CRD_MANIFEST, sort_keys=False)


def main() -> None:
    sys.stdout.write(render_crd_yaml())


if __name__ == "__main__":
    main()
