from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# Driver settings the engine is allowed to receive from the project config.
DRIVER_CONFIG_KEYS: tuple[str, ...] = (
    "waitForAnimations",
    "animationDistanceThreshold",
    "commandTimeout",
    "pageLoadTimeout",
    "requestTimeout",
    "responseTimeout",
    "environmentVariables",
    "xhrUrl",
    "baseUrl",
    "viewportWidth",
    "viewportHeight",
    "execTimeout",
)

DEFAULT_CHANNEL_URL = "ws://127.0.0.1:2020/__socket"


def pick_driver_config(config: Mapping[str, Any] | None) -> dict[str, Any]:
    if not isinstance(config, Mapping):
        return {}
    return {key: config[key] for key in DRIVER_CONFIG_KEYS if key in config}


def _float_env(env: Mapping[str, str], name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(env.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    channel_url: str = DEFAULT_CHANNEL_URL
    # None means wait for the restart join indefinitely.
    restart_timeout: float | None = 30.0
    connect_timeout: float = 5.0
    engine: str | None = None
    # Spec file: watched over the channel and handed to `engine.initialize` as the
    # run target. The engine factory decides how to load it; there is no frame.
    spec: str | None = None
    project_config: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RunnerConfig:
        env_map = env if env is not None else os.environ
        url = (env_map.get("SPEC_RUNNER_CHANNEL_URL") or "").strip() or DEFAULT_CHANNEL_URL
        restart_timeout: float | None = _float_env(
            env_map, "SPEC_RUNNER_RESTART_TIMEOUT", default=30.0, lo=0.0, hi=600.0
        )
        if not restart_timeout:
            restart_timeout = None
        connect_timeout = _float_env(env_map, "SPEC_RUNNER_CONNECT_TIMEOUT", default=5.0, lo=0.1, hi=120.0)
        engine = (env_map.get("SPEC_RUNNER_ENGINE") or "").strip() or None
        spec = (env_map.get("SPEC_RUNNER_SPEC") or "").strip() or None
        project_config = (env_map.get("SPEC_RUNNER_PROJECT_CONFIG") or "").strip() or None
        level = (env_map.get("SPEC_RUNNER_LOG_LEVEL") or "INFO").strip().upper() or "INFO"
        return cls(
            channel_url=url,
            restart_timeout=restart_timeout,
            connect_timeout=connect_timeout,
            engine=engine,
            spec=spec,
            project_config=project_config,
            log_level=level,
        )


def load_project_config(path: str | None) -> dict[str, Any]:
    """Read the project's JSON config; a missing path yields an empty config."""
    if not path:
        return {}
    raw = Path(path).expanduser().read_text(encoding="utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"project config must be a JSON object: {path}")
    return data
