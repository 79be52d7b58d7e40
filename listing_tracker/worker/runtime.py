"""Process lifecycle helpers shared by the coordinator, workers and verifiers."""

import asyncio
import logging
import random
import signal
from typing import Awaitable, Callable, Optional

import redis.exceptions
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)

# Losing the coordination layer is fatal: these are never turned into retries
INFRASTRUCTURE_ERRORS = (
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
)


class StopFlag:
    """Cooperative stop request checked between queue operations."""

    def __init__(self):
        self._event = asyncio.Event()

    def request(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            logger.info(f"Stop requested ({reason}), draining current item")
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to seconds, waking early on stop.

        Returns:
            True if a stop was requested
        """
        if seconds <= 0:
            return self.requested
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.requested


def install_signal_handlers(stop: StopFlag) -> None:
    """Route SIGINT/SIGTERM to the stop flag (drain, then exit)."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.request, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: stop.request("signal"))


async def polite_delay(stop: StopFlag, min_seconds: float, max_seconds: float) -> bool:
    """Random politeness delay between requests; returns True if stopped."""
    return await stop.sleep(random.uniform(min_seconds, max(min_seconds, max_seconds)))


def start_metrics_server(port: Optional[int]) -> None:
    """Expose Prometheus metrics when a port is configured."""
    if not port:
        return
    from prometheus_client import start_http_server

    start_http_server(port)
    logger.info(f"Metrics exporter listening on :{port}")


async def run_process(
    name: str,
    main: Callable[[StopFlag], Awaitable[object]],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> int:
    """
    Run a long-lived process body with signal handling.

    Args:
        name: Process name used in logs
        main: Coroutine function receiving the stop flag
        cleanup: Coroutine closing connections; always awaited

    Returns:
        Exit code: 0 on success, 1 on any error
    """
    stop = StopFlag()
    install_signal_handlers(stop)
    exit_code = 0
    try:
        await main(stop)
    except INFRASTRUCTURE_ERRORS as e:
        logger.error(f"{name}: coordination layer unreachable, stopping: {e}")
        exit_code = 1
    except Exception:
        logger.exception(f"{name} crashed")
        exit_code = 1
    finally:
        if cleanup is not None:
            try:
                await cleanup()
            except Exception:
                logger.exception(f"{name}: error while closing connections")
    logger.info(f"{name} exited with code {exit_code}")
    return exit_code
