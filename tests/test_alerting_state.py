from __future__ import annotations

import pytest

from watchtower_monitor.alerting import build_down_alert_subject, next_alert_state
from watchtower_monitor.models import ServerStatus


def test_failure_streak_alerts_once_at_threshold() -> None:
    fail = 0
    sent = False
    alerts = 0

    for _ in range(6):
        decision = next_alert_state(probe_ok=False, consecutive_failures=fail, alert_enabled=True, alert_sent=sent)
        fail, sent = decision.consecutive_failures, decision.alert_sent
        alerts += int(decision.should_send_alert)
        assert decision.status is ServerStatus.OFFLINE

    assert fail == 6
    assert sent is True
    assert alerts == 1


def test_alert_triggers_on_third_failure() -> None:
    decision = next_alert_state(probe_ok=False, consecutive_failures=1, alert_enabled=True, alert_sent=False)
    assert decision.consecutive_failures == 2
    assert decision.should_send_alert is False
    assert decision.alert_sent is False

    decision = next_alert_state(probe_ok=False, consecutive_failures=2, alert_enabled=True, alert_sent=False)
    assert decision.consecutive_failures == 3
    assert decision.should_send_alert is True
    assert decision.alert_sent is True


@pytest.mark.parametrize("streak", [0, 1, 2, 3, 10, 250])
def test_success_resets_streak_and_clears_alert(streak: int) -> None:
    decision = next_alert_state(
        probe_ok=True,
        consecutive_failures=streak,
        alert_enabled=True,
        alert_sent=streak >= 3,
    )
    assert decision.status is ServerStatus.ONLINE
    assert decision.consecutive_failures == 0
    assert decision.alert_sent is False
    assert decision.should_send_alert is False


def test_alerts_disabled_never_requests_alert() -> None:
    fail = 0
    for _ in range(10):
        decision = next_alert_state(probe_ok=False, consecutive_failures=fail, alert_enabled=False, alert_sent=False)
        fail = decision.consecutive_failures
        assert decision.should_send_alert is False
        assert decision.alert_sent is False
    assert fail == 10


def test_unsent_alert_is_retried_while_streak_continues() -> None:
    # A previous send failed, so alert_sent stayed False at 5 failures.
    decision = next_alert_state(probe_ok=False, consecutive_failures=5, alert_enabled=True, alert_sent=False)
    assert decision.consecutive_failures == 6
    assert decision.should_send_alert is True


def test_custom_threshold() -> None:
    decision = next_alert_state(
        probe_ok=False, consecutive_failures=0, alert_enabled=True, alert_sent=False, failure_threshold=1
    )
    assert decision.should_send_alert is True


def test_subject_mentions_url() -> None:
    subject = build_down_alert_subject("https://example.com/health")
    assert "https://example.com/health" in subject
    assert subject.startswith("🚨 Server Down Alert:")
