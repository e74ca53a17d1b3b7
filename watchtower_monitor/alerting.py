from __future__ import annotations

from dataclasses import dataclass

from watchtower_monitor.models import ServerStatus


DEFAULT_FAILURE_THRESHOLD = 3


@dataclass(frozen=True)
class AlertDecision:
    status: ServerStatus
    consecutive_failures: int
    alert_sent: bool
    should_send_alert: bool


def next_alert_state(
    *,
    probe_ok: bool,
    consecutive_failures: int,
    alert_enabled: bool,
    alert_sent: bool,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> AlertDecision:
    """
    Per-server alert state machine:

        alert_sent=False --(>= threshold failures, alerts enabled)--> True --(success)--> False

    At most one alert is requested per failure streak.
    """
    failure_threshold = max(1, int(failure_threshold))

    if probe_ok:
        return AlertDecision(
            status=ServerStatus.ONLINE,
            consecutive_failures=0,
            alert_sent=False,
            should_send_alert=False,
        )

    fail_streak = max(0, int(consecutive_failures)) + 1
    should_send = bool(fail_streak >= failure_threshold and alert_enabled and not alert_sent)
    return AlertDecision(
        status=ServerStatus.OFFLINE,
        consecutive_failures=fail_streak,
        alert_sent=bool(alert_sent or should_send),
        should_send_alert=should_send,
    )


def build_down_alert_subject(url: str) -> str:
    return f"🚨 Server Down Alert: {url}"
