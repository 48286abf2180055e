"""
core/retry.py -- Bounded retry-with-backoff for startup dependencies.

Both processes block on an external service before doing any work: the API
waits for the database before it serves traffic, the CDC consumer waits for
the Kafka broker before it subscribes. The loop is the same in both cases --
probe, sleep, probe again, give up after a fixed number of attempts -- so it
lives here once, built on tenacity, in a sync and an async flavour.

Exhausting the attempts raises ResourceUnavailable. Callers treat that as
fatal: the process exits rather than serving degraded traffic.

Usage:
    wait_until_ready(store.ping, name="database", attempts=30, interval=2.0)
    await wait_until_ready_async(probe, name="Kafka", attempts=60, interval=2.0)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

logger = logging.getLogger("helfy.retry")


class ResourceUnavailable(RuntimeError):
    """A startup dependency did not become reachable within the retry budget."""

    def __init__(self, name: str, attempts: int) -> None:
        self.name = name
        self.attempts = attempts
        super().__init__(f"{name} connection failed after {attempts} attempts")


def _policy(
    name: str,
    attempts: int,
    interval: float,
    backoff: float,
    max_interval: float | None,
    retry_on: tuple[type[BaseException], ...],
) -> dict[str, Any]:
    """Build the tenacity keyword arguments shared by both flavours.

    backoff == 1.0 keeps a fixed interval between probes. Anything larger
    grows the interval geometrically from `interval`, capped at max_interval.
    """

    def _log_wait(retry_state: RetryCallState) -> None:
        logger.warning("Waiting for %s... (%d/%d)", name, retry_state.attempt_number, attempts)

    if backoff <= 1.0:
        wait = wait_fixed(interval)
    else:
        wait = wait_exponential(
            multiplier=interval,
            exp_base=backoff,
            max=max_interval if max_interval is not None else interval * attempts,
        )
    return {
        "stop": stop_after_attempt(attempts),
        "wait": wait,
        "retry": retry_if_exception_type(retry_on),
        "before_sleep": _log_wait,
        "reraise": False,
    }


def wait_until_ready(
    check: Callable[[], object],
    *,
    name: str,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> None:
    """Call check() until it returns without raising, at most `attempts` times.

    Raises ResourceUnavailable (chained to the last probe error) when the
    budget runs out.
    """
    try:
        for attempt in Retrying(**_policy(name, attempts, interval, backoff, max_interval, retry_on)):
            with attempt:
                check()
    except RetryError as exc:
        last_exc = exc.last_attempt.exception()
        logger.error("%s unreachable after %d attempts: %s", name, attempts, last_exc)
        raise ResourceUnavailable(name, attempts) from last_exc
    logger.info("%s connected", name)


async def wait_until_ready_async(
    check: Callable[[], Awaitable[object]],
    *,
    name: str,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> None:
    """Async twin of wait_until_ready(); sleeps with asyncio between probes."""
    try:
        async for attempt in AsyncRetrying(**_policy(name, attempts, interval, backoff, max_interval, retry_on)):
            with attempt:
                await check()
    except RetryError as exc:
        last_exc = exc.last_attempt.exception()
        logger.error("%s unreachable after %d attempts: %s", name, attempts, last_exc)
        raise ResourceUnavailable(name, attempts) from last_exc
    logger.info("%s connected", name)
