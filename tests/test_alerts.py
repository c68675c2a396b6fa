from ccr import alerts, db
from ccr.db import RolloutStatus
from ccr.settings import Settings


def test_disabled_email_is_not_sent(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False))
    assert alerts.send_email("subject", "body") is False


def test_incomplete_smtp_settings_are_not_sent(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=True, smtp_user=None))
    assert alerts.send_email("subject", "body") is False


def test_email_is_sent_with_complete_settings(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            sent.append((host, port))

        def starttls(self):
            pass

        def login(self, user, password):
            sent.append(user)

        def sendmail(self, from_addr, to_addrs, msg):
            sent.append(to_addrs)

        def quit(self):
            pass

    monkeypatch.setattr(
        alerts,
        "settings",
        Settings(
            enable_email=True,
            smtp_host="smtp.example.com",
            smtp_port=587,
            smtp_user="ops",
            smtp_password="pw",
            email_from="ccr@example.com",
            email_to="oncall@example.com",
        ),
    )
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    assert alerts.send_email("Workload STUCK: shop", "detail") is True
    assert sent == [("smtp.example.com", 587), "ops", ["oncall@example.com"]]


def test_alert_body_carries_record_and_recent_events():
    db.log_event("ERROR", "Rollout #2 failed: replica shop-6 never became ready", workload="shop")
    record = db.insert_rollout("shop", "rollout", {"db": 1}, {"db": 2})
    db.finish_rollout(record.id, RolloutStatus.FAILED, "replica shop-6 never became ready")

    body = alerts.alert_body("shop", "Rollback failed", db.get_rollout(record.id))

    assert body.splitlines()[:5] == [
        "Workload: shop",
        "Reason: Rollback failed",
        f"Record: #{record.id} rollout (Failed)",
        "From: db=1",
        "To: db=2",
    ]
    assert "never became ready" in body.split("Recent events:")[1]


def test_notify_respects_disabled_email(monkeypatch):
    sent = []
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False))
    monkeypatch.setattr(alerts, "send_email", lambda subject, body: sent.append(subject) or True)
    assert alerts.notify("shop", "Workload STUCK", "no previous configuration") is False
    assert sent == []
