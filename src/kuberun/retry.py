"""Unbounded retry loop driven by explicit attempt results.

Each attempt returns ``None`` (done), ``Retryable`` (sleep and go again) or
``Fatal`` (stop and raise). There is no attempt limit: the caller bounds the
loop with a CancelToken.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeAlias

from kuberun.cancel import CancelToken
from kuberun.config import RetryConfig
from kuberun.logger import logger


@dataclass(frozen=True)
class Retryable:
    reason: str


@dataclass(frozen=True)
class Fatal:
    error: Exception


Attempt: TypeAlias = Retryable | Fatal | None


def exponential_intervals(
    initial: float = 0.5,
    multiplier: float = 1.5,
    max_interval: float = 30.0,
    jitter: float = 0.1,
) -> Iterator[float]:
    """Yield sleep intervals forever, growing geometrically up to *max_interval*."""
    interval = initial
    while True:
        spread = interval * jitter
        yield max(0.0, interval + random.uniform(-spread, spread))
        interval = min(interval * multiplier, max_interval)


def intervals_from_config(cfg: RetryConfig) -> Iterator[float]:
    return exponential_intervals(
        initial=cfg.initial_interval_s,
        multiplier=cfg.multiplier,
        max_interval=cfg.max_interval_s,
        jitter=cfg.jitter,
    )


async def retry_with_interval(
    body: Callable[[], Awaitable[Attempt]],
    intervals: Iterator[float],
    cancel: CancelToken,
    *,
    operation: str = "operation",
) -> None:
    """Run *body* until it returns None.

    Raises the wrapped error when *body* returns ``Fatal`` and
    ``OperationCancelled`` when *cancel* fires (checked between attempts and
    during the backoff sleep).
    """
    attempt = 0
    while True:
        if cancel.cancelled:
            await cancel.sleep(0)  # raises OperationCancelled
        attempt += 1
        result = await body()
        match result:
            case None:
                return
            case Fatal(error=error):
                raise error
            case Retryable(reason=reason):
                delay = next(intervals)
                logger.debug(
                    "Retrying after backoff",
                    operation=operation,
                    attempt=attempt,
                    reason=reason,
                    delay_s=round(delay, 3),
                )
                await cancel.sleep(delay)
