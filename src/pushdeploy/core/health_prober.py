"""Bounded HTTP health polling."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import TypeAlias

import httpx

from pushdeploy.models.deployment import EndpointCheck, HealthProbeResult, HealthVerdict

logger = logging.getLogger(__name__)

DEFAULT_PATHS = ("/health", "/healthz", "/api/health", "/")
ACCEPTED_STATUSES = frozenset({200, 201, 204, 301, 302})
# Answered, so the port is bound, but not a health signal. Never accepted.
ALIVE_STATUSES = frozenset({304, 401, 403, 404})

Clock: TypeAlias = Callable[[], float]
Sleeper: TypeAlias = Callable[[float], None]


class HealthProber:
    """Poll candidate endpoints until one answers with an accepted status.

    Total time spent in :meth:`probe` never exceeds ``max_attempts * interval``:
    request timeouts are clipped to whatever is left of that budget.
    """

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        request_timeout: float = 5.0,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
    ) -> None:
        self._client = client
        self._request_timeout = request_timeout
        self._clock = clock or time.monotonic
        self._sleep = sleeper or time.sleep

    def probe(
        self,
        base_url: str,
        max_attempts: int,
        interval: float,
        paths: Sequence[str] | None = None,
    ) -> HealthProbeResult:
        attempts = max(1, max_attempts)
        candidates = [_join(base_url, path) for path in (paths or DEFAULT_PATHS)]
        started = self._clock()
        deadline = started + attempts * interval if interval > 0 else None
        checks: list[EndpointCheck] = []
        last_round: list[EndpointCheck] = []
        attempt = 0

        client = self._client or httpx.Client(follow_redirects=False)
        try:
            for attempt in range(1, attempts + 1):
                last_round = []
                for url in candidates:
                    remaining = self._remaining(deadline)
                    if remaining <= 0:
                        break
                    check = self._check(client, url, attempt, min(self._request_timeout, remaining))
                    checks.append(check)
                    last_round.append(check)
                    if check.status_code in ACCEPTED_STATUSES:
                        elapsed = self._clock() - started
                        logger.info(
                            "Health check passed: %s returned %s (attempt %d, %.1fs)",
                            url,
                            check.status_code,
                            attempt,
                            elapsed,
                        )
                        return HealthProbeResult(
                            verdict=HealthVerdict.HEALTHY,
                            checks=checks,
                            attempts=attempt,
                            elapsed_seconds=elapsed,
                            healthy_url=url,
                        )
                remaining = self._remaining(deadline)
                if attempt == attempts or remaining <= 0:
                    break
                logger.info(
                    "Health check attempt %d/%d not healthy, retrying in %ss",
                    attempt,
                    attempts,
                    interval,
                )
                self._sleep(min(interval, remaining))
        finally:
            if self._client is None:
                client.close()

        verdict = _verdict(last_round)
        elapsed = self._clock() - started
        logger.warning(
            "Health check %s after %d attempts (%.1fs)", verdict.value, attempt, elapsed
        )
        return HealthProbeResult(
            verdict=verdict, checks=checks, attempts=attempt, elapsed_seconds=elapsed
        )

    def _remaining(self, deadline: float | None) -> float:
        if deadline is None:
            return self._request_timeout
        return deadline - self._clock()

    @staticmethod
    def _check(client: httpx.Client, url: str, attempt: int, timeout: float) -> EndpointCheck:
        try:
            response = client.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            logger.debug("Health check %s failed: %s", url, exc)
            return EndpointCheck(attempt=attempt, url=url, error=exc.__class__.__name__)
        if response.status_code in ALIVE_STATUSES:
            logger.debug("%s is alive but returned %s", url, response.status_code)
        return EndpointCheck(attempt=attempt, url=url, status_code=response.status_code)


def _verdict(last_round: list[EndpointCheck]) -> HealthVerdict:
    if last_round and all(
        check.status_code is not None and check.status_code >= 500 for check in last_round
    ):
        return HealthVerdict.UNHEALTHY
    return HealthVerdict.INCONCLUSIVE


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")
