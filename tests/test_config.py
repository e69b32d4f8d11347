from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from spec_runner import main
from spec_runner.channel import ControlChannel, WebSocketControlChannel
from spec_runner.config import (
    DEFAULT_CHANNEL_URL,
    DRIVER_CONFIG_KEYS,
    RunnerConfig,
    load_project_config,
    pick_driver_config,
)
from spec_runner.engine import load_engine_factory
from spec_runner.events import Emitter
from spec_runner.main import build_coordinator


def test_pick_driver_config_keeps_only_allow_listed_keys() -> None:
    config = {
        "baseUrl": "http://localhost:3000",
        "commandTimeout": 4000,
        "execTimeout": 60000,
        "environmentVariables": {"user": "jane"},
        "projectRoot": "/home/jane/app",
        "socketIoRoute": "/__socket.io",
    }
    picked = pick_driver_config(config)
    assert picked == {
        "baseUrl": "http://localhost:3000",
        "commandTimeout": 4000,
        "execTimeout": 60000,
        "environmentVariables": {"user": "jane"},
    }
    assert set(picked) <= set(DRIVER_CONFIG_KEYS)
    assert pick_driver_config(None) == {}


def test_runner_config_defaults() -> None:
    cfg = RunnerConfig.from_env({})
    assert cfg.channel_url == DEFAULT_CHANNEL_URL
    assert cfg.restart_timeout == 30.0
    assert cfg.connect_timeout == 5.0
    assert cfg.engine is None
    assert cfg.log_level == "INFO"


def test_runner_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPEC_RUNNER_CHANNEL_URL", "ws://10.0.0.2:9000/__socket")
    monkeypatch.setenv("SPEC_RUNNER_RESTART_TIMEOUT", "12.5")
    monkeypatch.setenv("SPEC_RUNNER_CONNECT_TIMEOUT", "bogus")
    monkeypatch.setenv("SPEC_RUNNER_ENGINE", "my_engine:create")
    monkeypatch.setenv("SPEC_RUNNER_SPEC", "integration/login_spec.js")
    monkeypatch.setenv("SPEC_RUNNER_LOG_LEVEL", "debug")

    cfg = RunnerConfig.from_env()
    assert cfg.channel_url == "ws://10.0.0.2:9000/__socket"
    assert cfg.restart_timeout == 12.5
    assert cfg.connect_timeout == 5.0
    assert cfg.engine == "my_engine:create"
    assert cfg.spec == "integration/login_spec.js"
    assert cfg.log_level == "DEBUG"


def test_restart_timeout_zero_means_unbounded_and_is_clamped() -> None:
    assert RunnerConfig.from_env({"SPEC_RUNNER_RESTART_TIMEOUT": "0"}).restart_timeout is None
    assert RunnerConfig.from_env({"SPEC_RUNNER_RESTART_TIMEOUT": "9999"}).restart_timeout == 600.0


def test_load_project_config(tmp_path: Path) -> None:
    path = tmp_path / "cypress.json"
    path.write_text(json.dumps({"baseUrl": "http://localhost:4200"}), encoding="utf-8")
    assert load_project_config(str(path)) == {"baseUrl": "http://localhost:4200"}
    assert load_project_config(None) == {}

    bad = tmp_path / "list.json"
    bad.write_text("[1]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_project_config(str(bad))


def test_load_engine_factory_resolves_dotted_attribute() -> None:
    assert load_engine_factory("spec_runner.events:Emitter") is Emitter
    assert load_engine_factory("spec_runner.config:RunnerConfig.from_env") is not None


@pytest.mark.parametrize("spec", ["", "spec_runner.events", ":Emitter", "spec_runner.events:"])
def test_load_engine_factory_rejects_malformed(spec: str) -> None:
    with pytest.raises(ValueError):
        load_engine_factory(spec)


def test_load_engine_factory_rejects_non_callable() -> None:
    with pytest.raises(TypeError):
        load_engine_factory("spec_runner.config:DEFAULT_CHANNEL_URL")


def test_build_coordinator_uses_socket_channel_and_restart_timeout() -> None:
    cfg = RunnerConfig(engine="spec_runner.events:Emitter", restart_timeout=3.0)
    coordinator = build_coordinator(cfg)
    assert isinstance(coordinator.channel, WebSocketControlChannel)
    assert isinstance(coordinator.engine, Emitter)
    assert coordinator.restart_timeout == 3.0


def test_build_coordinator_requires_engine() -> None:
    with pytest.raises(ValueError):
        build_coordinator(RunnerConfig())


class _ScriptedEngine(Emitter):
    """Engine that finishes as soon as it is told to run."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[Any, ...]] = []

    def configure(self, config: dict[str, Any]) -> None:
        self.calls.append(("configure", config))

    def start(self) -> None:
        self.calls.append(("start",))

    def initialize(self, target: Any, frame: Any) -> None:
        self.calls.append(("initialize", target, frame))

    def run(self, on_complete: Any) -> None:
        self.calls.append(("run",))
        self.emit("stop")

    def abort(self) -> None:
        return None


class _AnsweringChannel(ControlChannel):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[Any, ...]] = []

    def _send(self, event: str, args: list[Any]) -> None:
        if args and callable(args[-1]):
            self.sent.append((event, *args[:-1]))
            args[-1](None)
            return
        self.sent.append((event, *args))


def test_serve_runs_spec_path_as_engine_target(monkeypatch: pytest.MonkeyPatch) -> None:
    engines: list[_ScriptedEngine] = []

    def _factory() -> _ScriptedEngine:
        engine = _ScriptedEngine()
        engines.append(engine)
        return engine

    monkeypatch.setattr(main, "load_engine_factory", lambda _target: _factory)
    channel = _AnsweringChannel()
    cfg = RunnerConfig(engine="tests:engine", spec="cypress/integration/login_spec.js")

    assert asyncio.run(main.serve(cfg, channel=channel)) == 0

    calls = engines[0].calls
    assert ("initialize", "cypress/integration/login_spec.js", None) in calls
    assert calls[-1] == ("run",)
    assert ("watch:test:file", "cypress/integration/login_spec.js") in channel.sent
