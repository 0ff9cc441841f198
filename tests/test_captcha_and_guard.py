"""Tests for the CAPTCHA controller, the attempt guard and the countdown."""

import asyncio
from datetime import timedelta

import pytest

from authflow.exceptions import MissingChallenge
from authflow.models.enums import CaptchaState, FlowKey
from authflow.services.attempt_guard import AttemptGuard, attempts_key
from authflow.services.captcha_challenge import (
    EXPIRED_MESSAGE,
    CaptchaChallengeController,
)
from authflow.services.countdown import CountdownTimer, seconds_until


@pytest.fixture
def captcha(config, logger, db):
    return CaptchaChallengeController(FlowKey.SIGN_IN_PASSWORD, config, logger, db)


@pytest.fixture
def guard(store, config, logger, db):
    return AttemptGuard(store, config, logger, db)


# ── CaptchaChallengeController ────────────────────────────────────────────────


class TestCaptchaChallenge:
    def test_request_shows_fresh_instance(self, captcha):
        before = captcha.handle.instance_id
        handle = captcha.request_challenge(reason="verify please")
        assert handle.instance_id == before + 1
        assert captcha.visible
        assert captcha.state == CaptchaState.PENDING
        assert captcha.error_message == "verify please"

    def test_token_is_single_use(self, captcha):
        captcha.request_challenge()
        captcha.on_verified("tok")
        assert captcha.consume() == "tok"
        with pytest.raises(MissingChallenge):
            captcha.consume()
        assert captcha.consume_if_verified() is None

    def test_expiry_regenerates_widget(self, captcha):
        captcha.request_challenge()
        captcha.on_verified("tok")
        instance = captcha.handle.instance_id
        captcha.on_expired()
        assert captcha.state == CaptchaState.EXPIRED
        assert captcha.handle.instance_id == instance + 1
        assert captcha.error_message == EXPIRED_MESSAGE
        assert not captcha.has_verified_token

    def test_empty_token_counts_as_error(self, captcha):
        captcha.request_challenge()
        captcha.on_verified("")
        assert captcha.state == CaptchaState.ERRORED

    def test_hides_immediately_without_event_loop(self, captcha):
        cleared = []
        captcha.on_escalation_cleared = lambda: cleared.append(True)
        captcha.request_challenge(escalation=True)
        captcha.on_verified("tok")
        assert not captcha.visible
        assert cleared == [True]
        assert captcha.has_verified_token

    async def test_hides_after_delay_inside_loop(self, captcha):
        captcha.request_challenge()
        captcha.on_verified("tok")
        assert captcha.visible
        await asyncio.sleep(0.01)
        assert not captcha.visible

    def test_reset_discards_token(self, captcha):
        captcha.request_challenge()
        captcha.on_verified("tok")
        captcha.reset()
        assert not captcha.visible
        assert not captcha.has_verified_token

    def test_escalation_is_audited_once(self, captcha, db):
        captcha.request_challenge(escalation=True)
        captcha.request_challenge(escalation=True)
        rows = db.sqlite.execute(
            "SELECT action FROM audit_log WHERE action = 'CAPTCHA_ESCALATED'"
        ).fetchall()
        assert len(rows) == 1


# ── AttemptGuard ──────────────────────────────────────────────────────────────


class TestAttemptGuard:
    def test_third_failure_crosses_threshold_once(self, guard):
        key = FlowKey.SIGN_IN_PASSWORD
        assert [guard.record_failure(key) for _ in range(4)] == [False, False, True, False]
        assert guard.is_captcha_required(key)
        assert guard.counter(key).count == 4

    def test_counts_are_per_flow_key(self, guard):
        for _ in range(3):
            guard.record_failure(FlowKey.SIGN_IN_PASSWORD)
        assert not guard.is_captcha_required(FlowKey.SIGN_IN_OTP)

    def test_count_survives_a_new_guard(self, guard, store, config, logger):
        for _ in range(3):
            guard.record_failure(FlowKey.SIGN_IN_PASSWORD)
        reloaded = AttemptGuard(store, config, logger)
        assert reloaded.is_captcha_required(FlowKey.SIGN_IN_PASSWORD)

    def test_backend_escalation_raises_to_threshold(self, guard):
        guard.record_failure(FlowKey.RESET_SUBMIT)
        guard.require_captcha(FlowKey.RESET_SUBMIT)
        assert guard.count(FlowKey.RESET_SUBMIT) == guard.threshold

    def test_success_clears_counter_and_lock(self, guard, store):
        key = FlowKey.SIGN_IN_PASSWORD
        guard.record_failure(key)
        guard.record_lockout(key, "Locked until 10:30")
        guard.record_success(key)
        assert store.get(attempts_key(key)) is None
        assert not guard.is_locked(key)

    def test_lockout_keeps_detail_verbatim(self, guard):
        guard.record_lockout(FlowKey.RESET_SUBMIT, "Try again after 10:30")
        assert guard.is_locked(FlowKey.RESET_SUBMIT)
        assert guard.lock_detail(FlowKey.RESET_SUBMIT) == "Try again after 10:30"
        guard.clear_lockout(FlowKey.RESET_SUBMIT)
        assert guard.lock_detail(FlowKey.RESET_SUBMIT) is None

    def test_threshold_comes_from_config(self, store, config, logger):
        custom = AttemptGuard(store, config.model_copy(update={"CAPTCHA_THRESHOLD": 1}), logger)
        assert custom.record_failure(FlowKey.SIGN_IN_PASSWORD)


# ── CountdownTimer ────────────────────────────────────────────────────────────


class TestCountdown:
    def test_seconds_until_rounds_up_and_floors_at_zero(self, clock):
        assert seconds_until(None, clock()) == 0
        assert seconds_until(clock() + timedelta(seconds=4.2), clock()) == 5
        assert seconds_until(clock() - timedelta(seconds=1), clock()) == 0

    async def test_ticks_then_expires(self, clock, logger):
        ticks, expired = [], []
        timer = CountdownTimer(clock, 0.01, ticks.append, lambda: expired.append(True), logger)
        timer.start(clock() + timedelta(seconds=2))
        await asyncio.sleep(0.03)
        assert timer.is_running
        assert ticks and ticks[-1] == 2
        clock.advance(2)
        await asyncio.sleep(0.03)
        assert expired == [True]
        assert not timer.is_running
        assert timer.deadline is None

    async def test_cancel_stops_ticking(self, clock, logger):
        ticks = []
        timer = CountdownTimer(clock, 0.01, ticks.append, lambda: None, logger)
        timer.start(clock() + timedelta(seconds=5))
        await asyncio.sleep(0.02)
        timer.cancel()
        count = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == count
        assert timer.remaining() == 0

    def test_start_without_loop_still_answers_remaining(self, clock, logger):
        timer = CountdownTimer(clock, 0.01, lambda n: None, lambda: None, logger)
        timer.start(clock() + timedelta(seconds=3))
        assert not timer.is_running
        assert timer.remaining() == 3
