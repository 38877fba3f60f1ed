"""
Entry point: run the grid worker until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from gridworker.app import start_worker
from gridworker.config.config import Settings
from gridworker.infra.logging_cfg import build_logger, log_event


async def main() -> int:
    cfg = Settings.load()
    log = build_logger("gridworker", level=cfg.log_level, file_path=cfg.log_file)
    log_event(log, "config", **{k: v for k, v in cfg.dump().items() if not isinstance(v, (list, dict))})

    handle, err = await start_worker(cfg)
    if err is not None:
        log.error(f"Worker failed to start: {err}")
        return 1
    if handle is None:
        log.info("Worker disabled (GW_WORKER_ENABLED=0), nothing to do")
        return 0

    loop = asyncio.get_running_loop()
    reason = {"value": "normal"}

    def stop_all(sig_name: str) -> None:
        reason["value"] = f"signal {sig_name}"
        handle.scheduler.stop()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all, sig.name)
        except NotImplementedError:
            pass

    try:
        if handle.task is not None:
            await handle.task
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
        reason["value"] = "cancelled"
    finally:
        await handle.close(reason["value"])
        log.info("Shutdown complete")
    return 0


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
