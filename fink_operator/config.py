"""Operator configuration read from the environment (and a local ``.env`` file)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

# Ensure ENV is loaded *early* so everything that relies on os.getenv works.
load_dotenv()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_number(environ: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class ControllerConfig:
    workers: int = 4
    driver_timeout: float = 120.0
    api_timeout: float = 30.0
    resync_period: float = 300.0
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap: float = 300.0
    compose_hibernate: bool = True
    install_crd: bool = False
    vm_memory: str = "1Gi"
    namespace: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControllerConfig":
        env = os.environ if environ is None else environ
        return cls(
            workers=int(_env_number(env, "FINK_WORKERS", cls.workers, minimum=1)),
            driver_timeout=_env_number(env, "FINK_DRIVER_TIMEOUT", cls.driver_timeout, minimum=0.001),
            api_timeout=_env_number(env, "FINK_API_TIMEOUT", cls.api_timeout),
            resync_period=_env_number(env, "FINK_RESYNC_PERIOD", cls.resync_period),
            backoff_base=_env_number(env, "FINK_BACKOFF_BASE", cls.backoff_base, minimum=0.001),
            backoff_factor=_env_number(env, "FINK_BACKOFF_FACTOR", cls.backoff_factor, minimum=1.0),
            backoff_cap=_env_number(env, "FINK_BACKOFF_CAP", cls.backoff_cap, minimum=0.001),
            compose_hibernate=_env_bool(env, "FINK_COMPOSE_HIBERNATE", cls.compose_hibernate),
            install_crd=_env_bool(env, "FINK_INSTALL_CRD", cls.install_crd),
            vm_memory=env.get("FINK_VM_MEMORY", cls.vm_memory),
            namespace=(env.get("FINK_NAMESPACE") or "").strip() or None,
        )
