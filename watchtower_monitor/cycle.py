from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Protocol

import httpx

from watchtower_monitor.alerting import build_down_alert_subject, next_alert_state
from watchtower_monitor.models import ProbeResult, ServerRecord, ServerStatus
from watchtower_monitor.probe import probe, safe_url
from watchtower_monitor.settings import CycleSettings


LOGGER = logging.getLogger("watchtower.cycle")


class ServerStore(Protocol):
    async def count(self) -> int: ...

    async def fetch_page(self, offset: int, limit: int) -> list[ServerRecord]: ...

    async def update_by_id(self, server_id: str, fields: Mapping[str, Any]) -> bool: ...


class Mailer(Protocol):
    async def send(self, to_address: str, subject: str, html_body: str) -> None: ...

    def render_down_alert(self, server: ServerRecord, error_message: str | None) -> str: ...


ProbeFn = Callable[..., Awaitable[ProbeResult]]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ServerOutcome:
    server_id: str
    status: ServerStatus
    alert_sent: bool = False
    alert_failed: bool = False


@dataclass
class CycleSummary:
    total: int = 0
    batches: int = 0
    checked: int = 0
    online: int = 0
    offline: int = 0
    alerts_sent: int = 0
    alert_failures: int = 0
    errors: int = 0


class CycleCoordinator:
    """
    Runs one monitoring pass: pages through every server record, probes each batch
    concurrently, writes back the new state and emails owners of servers that just
    crossed the failure threshold.
    """

    def __init__(
        self,
        store: ServerStore,
        mailer: Mailer,
        *,
        settings: CycleSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        probe_fn: ProbeFn = probe,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.mailer = mailer
        self.settings = settings or CycleSettings()
        self.http_client = http_client
        self._probe = probe_fn
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_cycle(self) -> CycleSummary:
        summary = CycleSummary()
        total = await self.store.count()
        if not total:
            LOGGER.info("No servers to monitor")
            return summary

        summary.total = int(total)
        batch_size = self.settings.batch_size
        LOGGER.info("Monitoring servers total=%s batch_size=%s", total, batch_size)

        for offset in range(0, total, batch_size):
            batch = await self.store.fetch_page(offset, batch_size)
            if not batch:
                LOGGER.warning("Empty page before expected end offset=%s total=%s", offset, total)
                break

            summary.batches += 1
            await self._process_batch(batch, summary)

            if offset + batch_size < total:
                await self._sleep(self.settings.batch_delay_ms / 1000.0)

        LOGGER.info(
            "Monitoring cycle completed checked=%s online=%s offline=%s alerts_sent=%s alert_failures=%s errors=%s",
            summary.checked,
            summary.online,
            summary.offline,
            summary.alerts_sent,
            summary.alert_failures,
            summary.errors,
        )
        return summary

    async def _process_batch(self, batch: list[ServerRecord], summary: CycleSummary) -> None:
        tasks = [asyncio.create_task(self.check_server(server)) for server in batch]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for server, res in zip(batch, results):
            if isinstance(res, BaseException):
                summary.errors += 1
                LOGGER.error(
                    "Server check crashed id=%s url=%s error=%s",
                    server.id,
                    safe_url(server.url),
                    f"{type(res).__name__}: {res}",
                    exc_info=res,
                )
                continue

            summary.checked += 1
            if res.status is ServerStatus.ONLINE:
                summary.online += 1
            else:
                summary.offline += 1
            if res.alert_sent:
                summary.alerts_sent += 1
            if res.alert_failed:
                summary.alert_failures += 1

    async def check_server(self, server: ServerRecord) -> ServerOutcome:
        result = await self._probe(server.url, self.settings.probe_timeout_ms, client=self.http_client)
        decision = next_alert_state(
            probe_ok=result.success,
            consecutive_failures=server.consecutive_failures,
            alert_enabled=server.alert_enabled,
            alert_sent=server.alert_sent,
            failure_threshold=self.settings.failure_threshold,
        )

        # alert_sent is only committed once the email has been accepted.
        persisted_alert_sent = server.alert_sent if decision.should_send_alert else decision.alert_sent
        fields: dict[str, Any] = {
            "status": decision.status,
            "response_time": int(result.response_time),
            "last_check": self._clock(),
            "consecutive_failures": decision.consecutive_failures,
            "alert_sent": persisted_alert_sent,
        }
        updated = await self.store.update_by_id(server.id, fields)

        level = logging.INFO if result.success else logging.WARNING
        LOGGER.log(
            level,
            "Server checked id=%s url=%s status=%s status_code=%s response_ms=%s failures=%s error=%s",
            server.id,
            safe_url(server.url),
            decision.status.value,
            result.status_code,
            result.response_time,
            decision.consecutive_failures,
            result.error_message,
        )

        if not updated:
            LOGGER.warning("Server record vanished during cycle id=%s url=%s", server.id, safe_url(server.url))
            return ServerOutcome(server_id=server.id, status=decision.status)

        if not decision.should_send_alert:
            return ServerOutcome(server_id=server.id, status=decision.status)

        snapshot = dataclasses.replace(server, **fields)
        delivered = await self._send_down_alert(snapshot, result.error_message)
        if delivered:
            await self.store.update_by_id(server.id, {"alert_sent": True})
        return ServerOutcome(
            server_id=server.id,
            status=decision.status,
            alert_sent=delivered,
            alert_failed=not delivered,
        )

    async def _send_down_alert(self, server: ServerRecord, error_message: str | None) -> bool:
        try:
            html = self.mailer.render_down_alert(server, error_message)
            await self.mailer.send(server.user_email, build_down_alert_subject(server.url), html)
        except Exception:
            LOGGER.exception("Email failed id=%s url=%s", server.id, safe_url(server.url))
            return False
        LOGGER.info("Alert sent id=%s url=%s", server.id, safe_url(server.url))
        return True
