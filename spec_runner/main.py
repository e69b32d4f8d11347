"""
Process entry point: connect the control channel, build the engine and drive one run.

The run lasts until the engine emits `stop` on the internal bus or the process is
interrupted.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

from .channel import WebSocketControlChannel
from .config import RunnerConfig, load_project_config
from .coordinator import LifecycleCoordinator
from .engine import load_engine_factory

logger = logging.getLogger("spec_runner")


def build_coordinator(cfg: RunnerConfig, *, channel: Any | None = None) -> LifecycleCoordinator:
    if not cfg.engine:
        raise ValueError("SPEC_RUNNER_ENGINE is required (package.module:factory)")
    engine = load_engine_factory(cfg.engine)()
    if channel is None:
        channel = WebSocketControlChannel(cfg.channel_url, open_timeout=cfg.connect_timeout)
    return LifecycleCoordinator(engine=engine, channel=channel, restart_timeout=cfg.restart_timeout)


async def serve(cfg: RunnerConfig, *, channel: Any | None = None) -> int:
    """Drive one run of `cfg.spec` until the engine emits `stop`.

    The spec path is the execution target passed to `engine.initialize`; the frame
    argument stays None since no browser frame hosts the run.
    """
    coordinator = build_coordinator(cfg, channel=channel)
    channel = coordinator.channel
    if isinstance(channel, WebSocketControlChannel):
        if not await channel.start(wait_timeout=cfg.connect_timeout):
            logger.warning("control channel not connected yet (%s); frames will be buffered", cfg.channel_url)

    done = asyncio.Event()
    coordinator.on("stop", lambda *_: done.set())

    coordinator.ensure_connectivity({"spec": cfg.spec})
    coordinator.start(load_project_config(cfg.project_config), cfg.spec)
    coordinator.run(cfg.spec, None)
    try:
        await done.wait()
    finally:
        coordinator.stop()
        if isinstance(channel, WebSocketControlChannel):
            await channel.close()
    return 0


def main() -> None:
    cfg = RunnerConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        code = asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        code = 130
    except ValueError as exc:
        logger.error("%s", exc)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
