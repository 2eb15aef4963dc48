from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal

from opentelemetry import trace

from driftwatch.core.config import Settings, get_settings
from driftwatch.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from driftwatch.services.repository import get_repository
from driftwatch.services.workflow import WorkflowRouter, build_workflow_router

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            logger.debug("signal handlers unavailable signal=%s", signum)


async def _wait_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, seconds))


async def run_worker(
    *,
    settings: Settings | None = None,
    router: WorkflowRouter | None = None,
    stop_event: asyncio.Event | None = None,
    max_sweeps: int | None = None,
) -> int:
    settings = settings or get_settings()
    stop_event = stop_event or asyncio.Event()
    store = router.store if router is not None else get_repository()
    router = router or build_workflow_router(settings, store)

    backoff = settings.sweep_interval_seconds
    sweeps = 0
    try:
        while not stop_event.is_set():
            if max_sweeps is not None and sweeps >= max_sweeps:
                break
            try:
                with tracer.start_as_current_span("worker.sweep_cycle"):
                    report = await router.run_sweep(cancel_event=stop_event)
                sweeps += 1
                if report.aborted:
                    raise RuntimeError(f"sweep aborted session={report.session}")
                backoff = settings.sweep_interval_seconds
                await _wait_or_stop(stop_event, settings.sweep_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await _wait_or_stop(stop_event, sleep_for)
                backoff = sleep_for
    finally:
        await store.close()

    logger.info("worker stopped sweeps=%s", sweeps)
    return sweeps


async def main() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    stop_event = asyncio.Event()
    install_stop_handlers(stop_event)
    try:
        await run_worker(settings=settings, stop_event=stop_event)
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(main())
