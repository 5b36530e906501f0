#!/usr/bin/env python3
"""Run the operator as a standalone process: ``python -m fink_operator``."""

import logging
import os
import socket

import kopf

from fink_operator import handlers  # noqa: F401  (registers the kopf handlers)
from fink_operator.config import ControllerConfig
from fink_operator.logs import configure_logging


def main():
    configure_logging()

    namespace = ControllerConfig.from_env().namespace
    if namespace:
        logging.info(f"FinK operator watching namespace {namespace}")
    else:
        logging.info("FinK operator watching VirtualMachine resources across all namespaces")

    # Configure leader election
    leader_id = os.environ.get("POD_NAME", socket.gethostname())
    logging.info(f"Configuring leader election with leader ID: {leader_id}")

    # With KOPF_STANDALONE=false replicas elect a leader through the KopfPeering
    # resource, so only one of them runs the workers at a time.
    standalone = os.environ.get("KOPF_STANDALONE", "true").lower() in ("1", "true", "yes")
    kopf.run(
        standalone=standalone,
        clusterwide=not namespace,
        namespaces=[namespace] if namespace else (),
        peering_name=os.environ.get("KOPF_PEERING", "fink-operator"),
        identity=leader_id,
        priority=0,
        liveness_endpoint=os.environ.get("FINK_LIVENESS_ENDPOINT", "http://0.0.0.0:8080/healthz"),
        memo=kopf.Memo(),
    )


if __name__ == "__main__":
    main()
