from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .config import DetectionSignatures, SupervisorConfig
from .models import ErrorType, Proxy


class Signal(str, Enum):
    NONE = "none"
    CAPTCHA = "captcha"
    IP_BAN = "ip_ban"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"

    @property
    def error_type(self) -> Optional[ErrorType]:
        return _SIGNAL_ERRORS.get(self)


_SIGNAL_ERRORS = {
    Signal.CAPTCHA: ErrorType.CAPTCHA_REQUIRED,
    Signal.IP_BAN: ErrorType.IP_BANNED,
    Signal.BLOCKED: ErrorType.BLOCKED,
    Signal.RATE_LIMITED: ErrorType.RATE_LIMITED,
}


class SignalDetector:
    """Classifies a response against configurable anti-bot signatures.

    The first matching category wins, in ladder order: captcha, IP ban,
    generic block / rate limit."""

    def __init__(self, signatures: Optional[DetectionSignatures] = None) -> None:
        self._sig = signatures or DetectionSignatures()

    def detect(self, status_code: Optional[int], content: Optional[str]) -> Signal:
        text = (content or "").lower()
        if text and (
            _contains_any(text, self._sig.captcha_markup) or _contains_any(text, self._sig.captcha_keywords)
        ):
            return Signal.CAPTCHA
        if text and _contains_any(text, self._sig.ip_ban_keywords):
            return Signal.IP_BAN
        if status_code in self._sig.rate_limit_statuses:
            return Signal.RATE_LIMITED
        if status_code in self._sig.block_statuses:
            return Signal.BLOCKED
        if text and _contains_any(text, self._sig.block_keywords):
            return Signal.BLOCKED
        return Signal.NONE


def _contains_any(text: str, needles) -> bool:
    return any(n.lower() in text for n in needles)


@dataclass
class SiteDefenseState:
    """Per-site escalation bookkeeping owned by the supervisor."""

    consecutive_failures: int = 0
    consecutive_blocks: int = 0
    cooldown_until: float = 0.0
    proxy: Optional[Proxy] = None
    switch_requested: bool = False
    last_switch: float = 0.0


@dataclass(frozen=True)
class EscalationOutcome:
    site_id: str
    success: bool
    signal: Signal = Signal.NONE
    status_code: Optional[int] = None


@dataclass(frozen=True)
class EscalationDecision:
    strategy: Optional[str] = None
    retry: bool = True
    cooldown: float = 0.0
    switch_proxy: bool = False
    signal: Signal = Signal.NONE


NO_ACTION = EscalationDecision()


class EscalationStrategy(ABC):
    """One rung of the escalation ladder.

    Each strategy evaluates a request outcome together with the site's
    defense state and decides whether it applies; the supervisor applies the
    first match only."""

    @abstractmethod
    def should_apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> bool:
        """Return True if this rung handles the given outcome."""
        raise NotImplementedError

    @abstractmethod
    def apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> EscalationDecision:
        """Update the site state and return the response to the outcome."""
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self.__class__.__name__


class CaptchaStrategy(EscalationStrategy):
    """Captcha wall: skip the item, switch proxy, cool the site down."""

    def __init__(self, cooldown: float = 30.0) -> None:
        self._cooldown = cooldown

    def should_apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> bool:
        return outcome.signal is Signal.CAPTCHA

    def apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> EscalationDecision:
        return EscalationDecision(self.name, retry=False, cooldown=self._cooldown, switch_proxy=True, signal=outcome.signal)


class IpBanStrategy(EscalationStrategy):
    """IP ban: mandatory cooldown and a forced proxy switch."""

    def __init__(self, cooldown: float = 60.0) -> None:
        self._cooldown = cooldown

    def should_apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> bool:
        return outcome.signal is Signal.IP_BAN

    def apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> EscalationDecision:
        return EscalationDecision(self.name, retry=True, cooldown=self._cooldown, switch_proxy=True, signal=outcome.signal)


class BlockStrategy(EscalationStrategy):
    """Generic block or rate limit: long cooldown, switch proxy on repeats."""

    def __init__(self, cooldown: float = 120.0, switch_after: int = 2) -> None:
        self._cooldown = cooldown
        self._switch_after = switch_after

    def should_apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> bool:
        return outcome.signal in (Signal.BLOCKED, Signal.RATE_LIMITED)

    def apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> EscalationDecision:
        state.consecutive_blocks += 1
        switch = state.consecutive_blocks >= self._switch_after
        if switch:
            state.consecutive_blocks = 0
        return EscalationDecision(self.name, retry=True, cooldown=self._cooldown, switch_proxy=switch, signal=outcome.signal)


class FailureThresholdStrategy(EscalationStrategy):
    """Plain failures piling up on one site: switch proxy, no cooldown."""

    def __init__(self, threshold: int = 3) -> None:
        self._threshold = threshold

    def should_apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> bool:
        return (
            not outcome.success
            and outcome.signal is Signal.NONE
            and state.consecutive_failures >= self._threshold
        )

    def apply(self, outcome: EscalationOutcome, state: SiteDefenseState) -> EscalationDecision:
        state.consecutive_failures = 0
        return EscalationDecision(self.name, retry=True, switch_proxy=True)


def default_ladder(config: Optional[SupervisorConfig] = None) -> List[EscalationStrategy]:
    config = config or SupervisorConfig()
    return [
        CaptchaStrategy(cooldown=config.captcha_cooldown),
        IpBanStrategy(cooldown=config.ip_ban_cooldown),
        BlockStrategy(cooldown=config.block_cooldown, switch_after=config.block_switch_after),
        FailureThresholdStrategy(threshold=config.failure_threshold),
    ]
