"""Ordered fallback chains and fixed-delay retries."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeAlias, TypeVar

from pushdeploy.core.errors import FallbackExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper: TypeAlias = Callable[[float], None]


@dataclass(slots=True)
class Strategy:
    """One named way of achieving a goal."""

    name: str
    action: Callable[[], object]


@dataclass(slots=True)
class StrategyAttempt:
    """Outcome of running a single strategy."""

    name: str
    succeeded: bool
    error: str | None = None


@dataclass(slots=True)
class FallbackResult:
    """Outcome of a fallback chain that found a working strategy."""

    target: str
    strategy: str
    attempts: list[StrategyAttempt] = field(default_factory=list)


class FallbackChain:
    """Try strategies in order until one succeeds.

    A strategy fails when its action raises or returns ``False``, or when the
    optional ``verify`` check is false afterwards. Failures are logged and the
    next strategy runs; :class:`FallbackExhaustedError` is raised only
    after every strategy has failed.
    """

    def __init__(
        self,
        target: str,
        strategies: list[Strategy] | None = None,
        *,
        verify: Callable[[], bool] | None = None,
    ) -> None:
        self.target = target
        self._strategies: list[Strategy] = list(strategies or [])
        self._verify = verify

    def add(self, name: str, action: Callable[[], object]) -> FallbackChain:
        self._strategies.append(Strategy(name=name, action=action))
        return self

    @property
    def strategies(self) -> list[str]:
        return [strategy.name for strategy in self._strategies]

    def run(self) -> FallbackResult:
        attempts: list[StrategyAttempt] = []
        for strategy in self._strategies:
            logger.info("Trying %s for %s", strategy.name, self.target)
            try:
                outcome = strategy.action()
            except Exception as exc:
                logger.warning("%s failed for %s: %s", strategy.name, self.target, exc)
                attempts.append(StrategyAttempt(strategy.name, succeeded=False, error=str(exc)))
                continue
            if outcome is False:
                logger.warning("%s reported failure for %s", strategy.name, self.target)
                attempts.append(
                    StrategyAttempt(strategy.name, succeeded=False, error="reported failure")
                )
                continue
            if self._verify is not None and not self._verify():
                logger.warning("%s ran but %s is still not usable", strategy.name, self.target)
                attempts.append(
                    StrategyAttempt(strategy.name, succeeded=False, error="verification failed")
                )
                continue
            attempts.append(StrategyAttempt(strategy.name, succeeded=True))
            logger.info("%s succeeded via %s", self.target, strategy.name)
            return FallbackResult(target=self.target, strategy=strategy.name, attempts=attempts)

        failures = [f"{attempt.name}: {attempt.error}" for attempt in attempts]
        logger.error("All strategies failed for %s", self.target)
        raise FallbackExhaustedError(self.target, failures)


def retry(
    action: Callable[[], T],
    *,
    attempts: int,
    delay_seconds: float,
    description: str,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleeper: Sleeper | None = None,
) -> T:
    """Run ``action`` up to ``attempts`` times with a fixed delay in between."""
    sleep = sleeper or time.sleep
    total = max(1, attempts)
    for attempt in range(1, total + 1):
        logger.info("Attempt %d of %d: %s", attempt, total, description)
        try:
            return action()
        except retry_on as exc:
            if attempt == total:
                logger.error("%s failed after %d attempts: %s", description, total, exc)
                raise
            logger.warning("%s failed, retrying in %ss: %s", description, delay_seconds, exc)
            sleep(delay_seconds)
    raise AssertionError("unreachable")
