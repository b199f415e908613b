"""Tests for signal detection and the escalation ladder strategies."""

import unittest

from sitecrawl.config import SupervisorConfig
from sitecrawl.strategies import (
    BlockStrategy,
    CaptchaStrategy,
    EscalationOutcome,
    FailureThresholdStrategy,
    IpBanStrategy,
    Signal,
    SignalDetector,
    SiteDefenseState,
    default_ladder,
)


def _outcome(signal=Signal.NONE, success=False, status_code=None) -> EscalationOutcome:
    return EscalationOutcome(site_id="a", success=success, signal=signal, status_code=status_code)


class TestSignalDetector(unittest.TestCase):
    """Verify responses are classified in ladder order."""

    def setUp(self):
        self.detector = SignalDetector()

    def test_clean_page(self):
        self.assertIs(self.detector.detect(200, "<html><title>Desk lamp</title></html>"), Signal.NONE)

    def test_captcha_markup(self):
        self.assertIs(self.detector.detect(200, '<div class="g-recaptcha"></div>'), Signal.CAPTCHA)

    def test_captcha_wins_over_status(self):
        """A 403 that carries a captcha widget is a captcha, not a block."""
        self.assertIs(self.detector.detect(403, '<img src="/captcha?id=1">'), Signal.CAPTCHA)

    def test_ip_ban_keyword(self):
        self.assertIs(self.detector.detect(403, "Your IP has been blocked"), Signal.IP_BAN)

    def test_status_codes(self):
        self.assertIs(self.detector.detect(429, ""), Signal.RATE_LIMITED)
        self.assertIs(self.detector.detect(403, ""), Signal.BLOCKED)
        self.assertIs(self.detector.detect(500, "server error"), Signal.NONE)

    def test_block_keyword_on_200(self):
        self.assertIs(self.detector.detect(200, "Access Denied"), Signal.BLOCKED)

    def test_signal_error_types(self):
        self.assertIsNone(Signal.NONE.error_type)
        self.assertEqual(Signal.IP_BAN.error_type.value, "IP_BANNED")


class TestCaptchaStrategy(unittest.TestCase):
    def test_no_retry_with_cooldown_and_switch(self):
        strategy = CaptchaStrategy(cooldown=30.0)
        self.assertTrue(strategy.should_apply(_outcome(Signal.CAPTCHA), SiteDefenseState()))
        decision = strategy.apply(_outcome(Signal.CAPTCHA), SiteDefenseState())
        self.assertFalse(decision.retry)
        self.assertEqual(decision.cooldown, 30.0)
        self.assertTrue(decision.switch_proxy)


class TestIpBanStrategy(unittest.TestCase):
    def test_cooldown_and_forced_switch(self):
        decision = IpBanStrategy(cooldown=60.0).apply(_outcome(Signal.IP_BAN), SiteDefenseState())
        self.assertTrue(decision.retry)
        self.assertGreaterEqual(decision.cooldown, 60.0)
        self.assertTrue(decision.switch_proxy)


class TestBlockStrategy(unittest.TestCase):
    """Generic blocks switch proxy only on the second consecutive hit."""

    def test_switch_after_two(self):
        strategy = BlockStrategy(cooldown=120.0, switch_after=2)
        state = SiteDefenseState()
        first = strategy.apply(_outcome(Signal.BLOCKED, status_code=403), state)
        second = strategy.apply(_outcome(Signal.RATE_LIMITED, status_code=429), state)
        self.assertFalse(first.switch_proxy)
        self.assertTrue(second.switch_proxy)
        self.assertEqual(first.cooldown, 120.0)
        self.assertEqual(state.consecutive_blocks, 0)

    def test_applies_to_rate_limit_and_block_only(self):
        strategy = BlockStrategy()
        self.assertTrue(strategy.should_apply(_outcome(Signal.RATE_LIMITED), SiteDefenseState()))
        self.assertFalse(strategy.should_apply(_outcome(Signal.CAPTCHA), SiteDefenseState()))


class TestFailureThresholdStrategy(unittest.TestCase):
    def test_applies_at_threshold(self):
        strategy = FailureThresholdStrategy(threshold=3)
        self.assertFalse(strategy.should_apply(_outcome(), SiteDefenseState(consecutive_failures=2)))
        state = SiteDefenseState(consecutive_failures=3)
        self.assertTrue(strategy.should_apply(_outcome(), state))
        decision = strategy.apply(_outcome(), state)
        self.assertTrue(decision.switch_proxy)
        self.assertEqual(decision.cooldown, 0.0)
        self.assertEqual(state.consecutive_failures, 0)

    def test_ignores_anti_bot_outcomes(self):
        strategy = FailureThresholdStrategy(threshold=1)
        state = SiteDefenseState(consecutive_failures=5)
        self.assertFalse(strategy.should_apply(_outcome(Signal.BLOCKED), state))


class TestDefaultLadder(unittest.TestCase):
    def test_order_and_config(self):
        ladder = default_ladder(SupervisorConfig(captcha_cooldown=45.0))
        self.assertEqual(
            [s.name for s in ladder],
            ["CaptchaStrategy", "IpBanStrategy", "BlockStrategy", "FailureThresholdStrategy"],
        )
        self.assertEqual(ladder[0].apply(_outcome(Signal.CAPTCHA), SiteDefenseState()).cooldown, 45.0)


if __name__ == "__main__":
    unittest.main()
