import logging
import os
import socket
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s"


def configure_logging(level=None):
    """Configure logging with hostname and pod name for better traceability"""
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    # Add custom fields to the log record
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)
    # The Kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.info(f"Logging configured at {log_level} level")
    return old_factory
