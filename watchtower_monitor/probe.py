from __future__ import annotations

import asyncio
import logging
import time
from urllib.parse import urlsplit, urlunsplit

import httpx

from watchtower_monitor.models import ProbeResult


LOGGER = logging.getLogger("watchtower.probe")

USER_AGENT = "Watchtower-Monitor/1.0"
DEFAULT_TIMEOUT_MS = 15000
MAX_REDIRECTS = 5
MAX_ERROR_LEN = 500
TIMEOUT_MESSAGE = "Request timeout"
TOO_MANY_REDIRECTS_MESSAGE = "Exceeded maximum allowed redirects."


def safe_url(url: str) -> str:
    """
    Strip querystrings/fragments so tokens embedded in monitored URLs stay out of logs.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return s[:MAX_ERROR_LEN]


def build_client(*, max_connections: int | None = None) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=max_connections) if max_connections else httpx.Limits()
    return httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        limits=limits,
    )


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000.0))


def _describe_error(exc: BaseException) -> str:
    msg = str(exc).strip() or type(exc).__name__
    return msg[:MAX_ERROR_LEN]


async def probe(
    url: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    *,
    client: httpx.AsyncClient | None = None,
) -> ProbeResult:
    """
    Issue one GET against ``url`` and classify the outcome.

    Any response below 500 counts as reachable (4xx means the server answered).
    Never raises: timeouts, transport errors and 5xx responses are all reported
    through the returned ``ProbeResult``.
    """
    if client is None:
        async with build_client() as own_client:
            return await probe(url, timeout_ms, client=own_client)

    timeout_s = max(0.001, float(timeout_ms) / 1000.0)
    started = time.perf_counter()
    try:
        # httpx timeouts are per phase; wait_for bounds the whole request.
        resp = await asyncio.wait_for(
            client.get(
                url,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=timeout_s,
            ),
            timeout=timeout_s,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        LOGGER.debug("Probe timed out url=%s timeout_ms=%s", safe_url(url), timeout_ms)
        return ProbeResult(
            success=False,
            response_time=_elapsed_ms(started),
            status_code=None,
            error_message=TIMEOUT_MESSAGE,
        )
    except Exception as e:
        LOGGER.debug("Probe failed url=%s error=%s: %s", safe_url(url), type(e).__name__, e)
        return ProbeResult(
            success=False,
            response_time=_elapsed_ms(started),
            status_code=None,
            error_message=_describe_error(e),
        )

    elapsed = _elapsed_ms(started)
    # An injected client may allow more hops than we do.
    if len(resp.history) > MAX_REDIRECTS:
        return ProbeResult(
            success=False,
            response_time=elapsed,
            status_code=None,
            error_message=TOO_MANY_REDIRECTS_MESSAGE,
        )

    if resp.status_code >= 500:
        return ProbeResult(
            success=False,
            response_time=elapsed,
            status_code=resp.status_code,
            error_message=f"Request failed with status code {resp.status_code}",
        )

    return ProbeResult(
        success=True,
        response_time=elapsed,
        status_code=resp.status_code,
        error_message=None,
    )
