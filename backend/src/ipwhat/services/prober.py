"""Direct-to-IP reachability probe.

The probe issues a plain HTTP request to a literal address so no name
resolution is involved. Only the transport outcome matters: any response
head, whatever its status, proves the path works.

Failures that do not disclose their cause are classified by elapsed time.
A failure well inside the timeout usually means the TCP handshake completed
and something above it (TLS, HTTP parsing, a reset from the peer) went
wrong, so the address is treated as reachable. A failure close to the
timeout is treated as unreachable. This is a heuristic and produces false
positives and negatives near the threshold.
"""

import asyncio
import errno
import time
from typing import Callable

import httpx
import structlog

from ..config import get_settings
from ..models import AddressFamily, ErrorKind, ProbeResult, Target, now_ms

log = structlog.get_logger()

FAST_FAILURE_RATIO = 0.8

# The local stack reports these when there is no route at all
NO_ROUTE_ERRNOS = frozenset(
    {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT}
)


def discloses_no_route(exc: BaseException) -> bool:
    """Whether the exception chain carries a local no-route errno."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OSError) and current.errno in NO_ROUTE_ERRNOS:
            return True
        current = current.__cause__ or current.__context__
    return False


def classify_failure(
    elapsed_ms: int,
    timeout_ms: int,
    exc: BaseException | None = None,
    fast_failure_ratio: float = FAST_FAILURE_RATIO,
    timestamp: int | None = None,
) -> ProbeResult:
    """Classify a failed attempt that was not a timeout."""
    timestamp = timestamp if timestamp is not None else now_ms()

    if exc is not None and discloses_no_route(exc):
        return ProbeResult(
            connected=False, timestamp=timestamp, error_kind=ErrorKind.CONNECTION_FAILED
        )

    if elapsed_ms < fast_failure_ratio * timeout_ms:
        return ProbeResult(connected=True, latency_ms=elapsed_ms, timestamp=timestamp)

    return ProbeResult(
        connected=False, timestamp=timestamp, error_kind=ErrorKind.CONNECTION_FAILED
    )


class ReachabilityProber:
    """Stateless prober; one attempt per call, no retries."""

    def __init__(
        self,
        scheme: str | None = None,
        fast_failure_ratio: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        settings = get_settings().probe
        self.scheme = scheme or settings.scheme
        self.fast_failure_ratio = (
            settings.fast_failure_ratio if fast_failure_ratio is None else fast_failure_ratio
        )
        self._transport = transport
        self._timer = timer

    async def probe(self, address: str, family: AddressFamily, timeout_ms: int) -> ProbeResult:
        """Probe ``address`` directly and classify the outcome."""
        url = Target(family=family, address=address).url(self.scheme)
        timeout_s = max(timeout_ms, 1) / 1000

        start = self._timer()
        try:
            status_code = await asyncio.wait_for(self._attempt(url, timeout_s), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.info("probe_timeout", family=family.value, url=url, timeout_ms=timeout_ms)
            return ProbeResult(connected=False, error_kind=ErrorKind.TIMEOUT)
        except (httpx.HTTPError, OSError) as e:
            elapsed_ms = self._elapsed_ms(start)
            result = classify_failure(elapsed_ms, timeout_ms, e, self.fast_failure_ratio)
            log.info(
                "probe_failed",
                family=family.value,
                url=url,
                error=f"{type(e).__name__}: {e}",
                elapsed_ms=elapsed_ms,
                classified_connected=result.connected,
            )
            return result

        elapsed_ms = self._elapsed_ms(start)
        log.debug(
            "probe_completed",
            family=family.value,
            url=url,
            status_code=status_code,
            latency_ms=elapsed_ms,
        )
        return ProbeResult(connected=True, latency_ms=elapsed_ms)

    async def _attempt(self, url: str, timeout_s: float) -> int:
        # Stream so the body is never downloaded; the response head is enough
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            transport=self._transport,
            follow_redirects=False,
        ) as client:
            async with client.stream("GET", url, headers={"Cache-Control": "no-store"}) as response:
                return response.status_code

    def _elapsed_ms(self, start: float) -> int:
        return int(round((self._timer() - start) * 1000))
