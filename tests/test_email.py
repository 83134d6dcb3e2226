"""
Tests for the SMTP sender's retry policy and the message templates.
"""
import pytest

import email_service
from email_service import EmailSender, send_password_reset_email
from errors import DeliveryError


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(email_service.time, "sleep", recorded.append)
    return recorded


def flaky_deliver(failures):
    state = {"calls": 0}

    def deliver(self, msg):
        state["calls"] += 1
        if state["calls"] <= failures:
            raise ConnectionError("smtp unavailable")

    return deliver, state


def test_retries_with_exponential_backoff(monkeypatch, sleeps):
    deliver, state = flaky_deliver(failures=2)
    monkeypatch.setattr(EmailSender, "_deliver", deliver)
    sender = EmailSender(host="smtp.test", retries=3, delay=0.5)

    sender.send("a@example.com", "Subject", "<p>hi</p>")

    assert state["calls"] == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_last_attempt(monkeypatch, sleeps):
    deliver, state = flaky_deliver(failures=10)
    monkeypatch.setattr(EmailSender, "_deliver", deliver)
    sender = EmailSender(host="smtp.test", retries=3, delay=1)

    with pytest.raises(DeliveryError, match="after 3 attempts"):
        sender.send("a@example.com", "Subject", "<p>hi</p>")
    assert state["calls"] == 3
    # no sleep after the final failure
    assert sleeps == [1, 2]


def test_unconfigured_host_fails_delivery(sleeps):
    sender = EmailSender(host=None, retries=1, delay=0)
    sender.host = None
    with pytest.raises(DeliveryError):
        sender.send("a@example.com", "Subject", "<p>hi</p>")


def test_reset_template_carries_code(monkeypatch):
    captured = {}

    def deliver(self, msg):
        captured["to"] = msg["To"]
        captured["subject"] = msg["Subject"]
        captured["body"] = msg.get_payload()[0].get_payload(decode=True).decode("utf-8")

    monkeypatch.setattr(EmailSender, "_deliver", deliver)
    send_password_reset_email(EmailSender(host="smtp.test", retries=1), "p@example.com", "482913")

    assert captured["to"] == "p@example.com"
    assert captured["subject"].startswith("Password Reset")
    assert "482913" in captured["body"]
