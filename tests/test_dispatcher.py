"""
Delivery dispatcher tests.
Tests for per-channel isolation, retries and at-most-once delivery.
"""

import pytest
import threading
from datetime import datetime

from pricewatch.database.models import FlightAlert, NotificationStatus
from pricewatch.delivery.dispatcher import DeliveryDispatcher
from pricewatch.errors import PermanentDeliveryError, TransientDeliveryError
from pricewatch.notifiers.base import AlertNotification, NotificationResult
from pricewatch.rules.evaluator import MatchKind


@pytest.fixture
def alert(alert_repo, saved_filter):
    return alert_repo.create(
        FlightAlert(filter_id=saved_filter.id, target_price=400.0),
        datetime(2026, 10, 1, 12, 0),
    )


@pytest.fixture
def notification(alert):
    return AlertNotification(
        alert_id=alert.id,
        quote_id="quote-1",
        filter_name="NYC to LA",
        route="JFK -> LAX",
        price=385.0,
        target_price=400.0,
        currency="USD",
        provider="alpha",
        match_kind=MatchKind.EXACT_MATCH,
        triggered_at=datetime(2026, 10, 1, 12, 0),
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_dispatcher(notification_repo, clock, sleeps):
    def _make(notifiers, max_retries=3, max_notifications_per_day=0, sleep=None):
        return DeliveryDispatcher(
            notifiers,
            notification_repo,
            max_retries=max_retries,
            retry_delay=5.0,
            max_notifications_per_day=max_notifications_per_day,
            sleep=sleep or sleeps.append,
            clock=clock,
        )

    return _make


def _transient(channel):
    return NotificationResult(success=False, channel=channel, error="HTTP 503")


def _permanent(channel):
    return NotificationResult(
        success=False, channel=channel, error="invalid destination", permanent=True
    )


class TestDelivery:
    """Test successful fan-out."""

    def test_delivers_each_channel(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo
    ):
        """Should send once per channel and record each as sent."""
        email = fake_notifier("email")
        sms = fake_notifier("sms")
        dispatcher = make_dispatcher({"email": email, "sms": sms})

        outcomes = dispatcher.deliver(
            alert, notification, {"email": "a@example.com", "sms": "+15555550100"}
        )

        assert [o.status for o in outcomes] == [NotificationStatus.SENT] * 2
        assert email.sent == [("a@example.com", notification)]
        assert sms.sent[0][0] == "+15555550100"

        history = notification_repo.list_for_alert(alert.id)
        assert {(r.channel, r.status) for r in history} == {
            ("email", NotificationStatus.SENT),
            ("sms", NotificationStatus.SENT),
        }

    def test_second_delivery_is_skipped(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo
    ):
        """Should never send the same trigger twice on one channel."""
        email = fake_notifier("email")
        dispatcher = make_dispatcher({"email": email})

        dispatcher.deliver(alert, notification, {"email": "a@example.com"})
        outcomes = dispatcher.deliver(alert, notification, {"email": "a@example.com"})

        assert outcomes[0].status == NotificationStatus.SKIPPED
        assert len(email.sent) == 1
        sent_rows = [
            r for r in notification_repo.list_for_alert(alert.id)
            if r.status == NotificationStatus.SENT
        ]
        assert len(sent_rows) == 1

    def test_new_quote_is_delivered_again(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """Should treat a different triggering quote as a new notification."""
        email = fake_notifier("email")
        dispatcher = make_dispatcher({"email": email})

        dispatcher.deliver(alert, notification, {"email": "a@example.com"})
        notification.quote_id = "quote-2"
        outcomes = dispatcher.deliver(alert, notification, {"email": "a@example.com"})

        assert outcomes[0].delivered
        assert len(email.sent) == 2


class TestFailures:
    """Test retry policy and channel isolation."""

    def test_transient_failure_retried_with_backoff(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo, sleeps
    ):
        """Should try max_retries + 1 times with doubling delays."""
        sms = fake_notifier("sms", [_transient("sms")] * 4)
        dispatcher = make_dispatcher({"sms": sms})

        outcome = dispatcher.deliver(alert, notification, {"sms": "+15555550100"})[0]

        assert outcome.status == NotificationStatus.FAILED
        assert outcome.attempts == 4
        assert len(sms.sent) == 4
        assert sleeps == [5.0, 10.0, 20.0]

        history = notification_repo.list_for_alert(alert.id)
        assert [r.attempt for r in history] == [1, 2, 3, 4]
        assert all(r.status == NotificationStatus.FAILED for r in history)

    def test_transient_failure_then_success(
        self, make_dispatcher, fake_notifier, alert, notification, sleeps
    ):
        """Should stop retrying as soon as a send succeeds."""
        sms = fake_notifier("sms", [_transient("sms")])
        dispatcher = make_dispatcher({"sms": sms})

        outcome = dispatcher.deliver(alert, notification, {"sms": "+15555550100"})[0]

        assert outcome.delivered
        assert outcome.attempts == 2
        assert sleeps == [5.0]

    def test_permanent_failure_not_retried(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo, sleeps
    ):
        """Should record a permanent failure once and move on."""
        push = fake_notifier("push", [_permanent("push")])
        dispatcher = make_dispatcher({"push": push})

        outcome = dispatcher.deliver(alert, notification, {"push": "bad-token"})[0]

        assert outcome.status == NotificationStatus.PERMANENT_FAILURE
        assert len(push.sent) == 1
        assert sleeps == []
        history = notification_repo.list_for_alert(alert.id)
        assert len(history) == 1
        assert history[0].error == "invalid destination"

    def test_one_channel_failing_does_not_block_others(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """Should deliver on healthy channels when one fails permanently."""
        email = fake_notifier("email", [_permanent("email")])
        sms = fake_notifier("sms")
        dispatcher = make_dispatcher({"email": email, "sms": sms})

        outcomes = dispatcher.deliver(
            alert, notification, {"email": "nope", "sms": "+15555550100"}
        )

        assert outcomes[0].status == NotificationStatus.PERMANENT_FAILURE
        assert outcomes[1].status == NotificationStatus.SENT

    def test_notifier_exception_is_transient(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """Should treat an exception from a notifier as a failed attempt."""
        email = fake_notifier("email")
        calls = []

        def flaky_send(destination, n):
            calls.append(destination)
            if len(calls) == 1:
                raise RuntimeError("socket closed")
            return NotificationResult(success=True, channel="email")

        email.send = flaky_send
        dispatcher = make_dispatcher({"email": email})

        outcome = dispatcher.deliver(alert, notification, {"email": "a@example.com"})[0]
        assert outcome.delivered
        assert outcome.attempts == 2

    def test_raised_delivery_errors_are_classified(
        self, make_dispatcher, fake_notifier, alert, notification, sleeps
    ):
        """Should honor permanent and transient delivery errors raised by notifiers."""
        push = fake_notifier("push")
        push.send = lambda destination, n: (_ for _ in ()).throw(
            PermanentDeliveryError("token unregistered")
        )
        sms = fake_notifier("sms")
        sms.send = lambda destination, n: (_ for _ in ()).throw(
            TransientDeliveryError("gateway busy")
        )
        dispatcher = make_dispatcher({"push": push, "sms": sms}, max_retries=1)

        outcomes = dispatcher.deliver(
            alert, notification, {"push": "token", "sms": "+15555550100"}
        )

        assert outcomes[0].status == NotificationStatus.PERMANENT_FAILURE
        assert outcomes[0].attempts == 1
        assert outcomes[1].status == NotificationStatus.FAILED
        assert outcomes[1].attempts == 2
        assert sleeps == [5.0]

    def test_unconfigured_channel(
        self, make_dispatcher, alert, notification, notification_repo
    ):
        """Should record a permanent failure for channels without a notifier."""
        dispatcher = make_dispatcher({})

        outcome = dispatcher.deliver(alert, notification, {"browser": "https://push.example"})[0]

        assert outcome.status == NotificationStatus.PERMANENT_FAILURE
        assert "not configured" in outcome.error
        assert notification_repo.list_for_alert(alert.id)[0].channel == "browser"

    def test_history_failure_does_not_block_others(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo
    ):
        """Should report a crash on one channel and still deliver the next."""
        email = fake_notifier("email")
        sms = fake_notifier("sms")
        dispatcher = make_dispatcher({"email": email, "sms": sms})

        real_has_sent = notification_repo.has_sent

        def broken_has_sent(alert_id, quote_id, channel):
            if channel == "email":
                raise RuntimeError("database is locked")
            return real_has_sent(alert_id, quote_id, channel)

        notification_repo.has_sent = broken_has_sent
        outcomes = dispatcher.deliver(
            alert, notification, {"email": "a@example.com", "sms": "+15555550100"}
        )

        assert outcomes[0].status == NotificationStatus.FAILED
        assert "locked" in outcomes[0].error
        assert outcomes[1].delivered


class TestConcurrency:
    """Test that channels and concurrent deliveries do not block each other."""

    def test_backoff_on_one_channel_does_not_delay_another(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """SMS should go out while email is still backing off between retries."""
        sms_sent = threading.Event()
        sent_during_backoff = []

        def backoff(seconds):
            sent_during_backoff.append(sms_sent.wait(timeout=2))

        email = fake_notifier("email", [_transient("email")] * 4)
        sms = fake_notifier("sms")
        real_send = sms.send

        def sms_send(destination, n):
            result = real_send(destination, n)
            sms_sent.set()
            return result

        sms.send = sms_send
        dispatcher = make_dispatcher({"email": email, "sms": sms}, sleep=backoff)

        outcomes = dispatcher.deliver(
            alert, notification, {"email": "a@example.com", "sms": "+15555550100"}
        )

        assert outcomes[0].status == NotificationStatus.FAILED
        assert outcomes[1].delivered
        assert sent_during_backoff[0] is True

    def test_concurrent_deliveries_send_once(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """Two workers delivering the same trigger should produce one send."""
        started = threading.Event()
        release = threading.Event()
        email = fake_notifier("email")
        real_send = email.send

        def slow_send(destination, n):
            started.set()
            release.wait(timeout=2)
            return real_send(destination, n)

        email.send = slow_send
        dispatcher = make_dispatcher({"email": email})
        results = []

        first = threading.Thread(
            target=lambda: results.append(
                dispatcher.deliver(alert, notification, {"email": "a@example.com"})[0]
            )
        )
        first.start()
        assert started.wait(timeout=2)
        second = dispatcher.deliver(alert, notification, {"email": "a@example.com"})[0]
        release.set()
        first.join(timeout=2)

        assert second.status == NotificationStatus.SKIPPED
        assert results[0].delivered
        assert len(email.sent) == 1


class TestDailyCap:
    """Test the per-alert notification frequency cap."""

    def test_cap_skips_further_triggers(
        self, make_dispatcher, fake_notifier, alert, notification, notification_repo, clock
    ):
        """Should skip every channel once the alert hit its daily limit."""
        email = fake_notifier("email")
        dispatcher = make_dispatcher({"email": email}, max_notifications_per_day=2)

        for quote_id in ("quote-1", "quote-2", "quote-3"):
            notification.quote_id = quote_id
            outcome = dispatcher.deliver(alert, notification, {"email": "a@example.com"})[0]

        assert outcome.status == NotificationStatus.SKIPPED
        assert "limit" in outcome.error
        assert len(email.sent) == 2

        clock.advance(hours=25)
        notification.quote_id = "quote-4"
        assert dispatcher.deliver(alert, notification, {"email": "a@example.com"})[0].delivered

    def test_retrying_same_trigger_not_capped(
        self, make_dispatcher, fake_notifier, alert, notification
    ):
        """Should not count the trigger being delivered against the cap."""
        email = fake_notifier("email")
        sms = fake_notifier("sms")
        dispatcher = make_dispatcher({"email": email, "sms": sms}, max_notifications_per_day=1)

        dispatcher.deliver(alert, notification, {"email": "a@example.com"})
        outcome = dispatcher.deliver(alert, notification, {"sms": "+15555550100"})[0]

        assert outcome.delivered
