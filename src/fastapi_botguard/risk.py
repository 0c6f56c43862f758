"""Risk scoring for FastAPI BotGuard.

Combines a session's feature vector with server-side signals (IP reputation,
User-Agent class, JavaScript execution) into one bounded risk score. Every
rule is evaluated on its own; the score is the clamped sum of the weights of
the rules that fired. A rule whose input is unknown never fires.
"""

import re
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fastapi_botguard.features import FeatureVector


class UserAgentClass(str, Enum):
    """Coarse classification of the User-Agent header."""
    NORMAL = "normal"
    KNOWN_BOT = "known_bot"
    MISSING = "missing"


class RuleId(str, Enum):
    """Identifiers of the scoring rules."""
    DURATION_UNDER_1S = "duration_under_1s"
    LOW_POINTER_VARIABILITY = "low_pointer_variability"
    CONSTANT_SCROLL_SPEED = "constant_scroll_speed"
    FAST_OR_UNIFORM_TYPING = "fast_or_uniform_typing"
    MALICIOUS_IP = "malicious_ip"
    BOT_USER_AGENT = "bot_user_agent"
    MISSING_USER_AGENT = "missing_user_agent"
    JS_NOT_EXECUTED = "js_not_executed"


DEFAULT_RULE_WEIGHTS: Dict[RuleId, float] = {
    RuleId.DURATION_UNDER_1S: 0.3,
    RuleId.LOW_POINTER_VARIABILITY: 0.25,
    RuleId.CONSTANT_SCROLL_SPEED: 0.15,
    RuleId.FAST_OR_UNIFORM_TYPING: 0.2,
    RuleId.MALICIOUS_IP: 0.4,
    RuleId.BOT_USER_AGENT: 0.3,
    RuleId.MISSING_USER_AGENT: 0.2,
    RuleId.JS_NOT_EXECUTED: 0.3,
}


class RuleSetting(BaseModel):
    """Weight and on/off switch of a single rule."""
    weight: float = Field(ge=0.0)
    enabled: bool = True


class RiskConfig(BaseModel):
    """Rule weights and trigger thresholds.

    The thresholds are illustrative defaults, not calibrated constants.
    """

    rules: Dict[RuleId, RuleSetting] = Field(
        default_factory=lambda: {
            rule: RuleSetting(weight=weight) for rule, weight in DEFAULT_RULE_WEIGHTS.items()
        }
    )
    min_interaction_ms: float = Field(default=1000.0, ge=0.0)
    min_pointer_angle_stddev: float = Field(default=0.1, ge=0.0)
    min_keystroke_interval_mean_ms: float = Field(default=100.0, ge=0.0)
    min_keystroke_interval_stddev_ms: float = Field(default=30.0, ge=0.0)

    bot_user_agent_patterns: List[str] = Field(default_factory=lambda: [
        r'bot',
        r'crawl',
        r'spider',
        r'scraper',
        r'curl/',
        r'wget/',
        r'python-requests/',
        r'python-urllib',
        r'httpx',
        r'aiohttp',
        r'Go-http-client/',
        r'Apache-HttpClient/',
        r'okhttp',
        r'headless',
        r'PhantomJS',
        r'Selenium',
        r'puppeteer',
        r'playwright',
    ])

    @field_validator('rules')
    @classmethod
    def fill_missing_rules(cls, v):
        """Rules left out of a partial config keep their default weight."""
        merged = {rule: RuleSetting(weight=weight) for rule, weight in DEFAULT_RULE_WEIGHTS.items()}
        merged.update(v)
        return merged

    @field_validator('bot_user_agent_patterns')
    @classmethod
    def validate_regex_patterns(cls, v):
        """Validate regex patterns."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern '{pattern}': {e}")
        return v


class SideSignals(BaseModel):
    """Server-side signals; ``None`` means the signal is unknown."""
    ip_reputation: Optional[bool] = None
    user_agent_class: UserAgentClass = UserAgentClass.NORMAL
    js_executed: Optional[bool] = None


class RiskScore(BaseModel):
    """Score in [0, 1] plus the rules that contributed to it."""

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=1.0)
    triggered_rules: List[RuleId] = Field(default_factory=list)
    contributions: Dict[RuleId, float] = Field(default_factory=dict)


class UserAgentClassifier:
    """Classifies User-Agent strings; never raises on odd input."""

    def __init__(self, patterns: List[str]):
        self._bot_patterns: List[Pattern] = [re.compile(p, re.IGNORECASE) for p in patterns]

    def classify(self, user_agent: Optional[str]) -> UserAgentClass:
        if not isinstance(user_agent, str) or not user_agent.strip():
            return UserAgentClass.MISSING
        for pattern in self._bot_patterns:
            if pattern.search(user_agent):
                return UserAgentClass.KNOWN_BOT
        return UserAgentClass.NORMAL


def classify_user_agent(user_agent: Optional[str], config: Optional[RiskConfig] = None) -> UserAgentClass:
    """Classify a User-Agent header with the default (or given) patterns."""
    return UserAgentClassifier((config or RiskConfig()).bot_user_agent_patterns).classify(user_agent)


RuleCheck = Callable[[FeatureVector, SideSignals], bool]


class RiskScorer:
    """Weighted, independent rule evaluation."""

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()
        self._checks: Dict[RuleId, RuleCheck] = {
            RuleId.DURATION_UNDER_1S: self._short_duration,
            RuleId.LOW_POINTER_VARIABILITY: self._low_pointer_variability,
            RuleId.CONSTANT_SCROLL_SPEED: self._constant_scroll,
            RuleId.FAST_OR_UNIFORM_TYPING: self._machine_typing,
            RuleId.MALICIOUS_IP: lambda f, s: s.ip_reputation is True,
            RuleId.BOT_USER_AGENT: lambda f, s: s.user_agent_class == UserAgentClass.KNOWN_BOT,
            RuleId.MISSING_USER_AGENT: lambda f, s: s.user_agent_class == UserAgentClass.MISSING,
            RuleId.JS_NOT_EXECUTED: lambda f, s: s.js_executed is False,
        }

    def _short_duration(self, features: FeatureVector, signals: SideSignals) -> bool:
        duration = features.interaction_duration_ms
        return duration is not None and duration < self.config.min_interaction_ms

    def _low_pointer_variability(self, features: FeatureVector, signals: SideSignals) -> bool:
        stddev = features.pointer_angle_stddev
        return stddev is not None and stddev < self.config.min_pointer_angle_stddev

    def _constant_scroll(self, features: FeatureVector, signals: SideSignals) -> bool:
        return features.scroll_speed_constant is True

    def _machine_typing(self, features: FeatureVector, signals: SideSignals) -> bool:
        mean_ms = features.keystroke_interval_mean
        stddev_ms = features.keystroke_interval_stddev
        if mean_ms is None or stddev_ms is None:
            return False
        return (
            mean_ms < self.config.min_keystroke_interval_mean_ms
            or stddev_ms < self.config.min_keystroke_interval_stddev_ms
        )

    def score(self, features: FeatureVector, signals: SideSignals) -> RiskScore:
        """Score a feature vector and side signals.

        Args:
            features: Feature vector of the session
            signals: Server-side signals for the request

        Returns:
            RiskScore clamped to [0, 1] with the triggered rule ids
        """
        contributions: Dict[RuleId, float] = {}
        for rule, check in self._checks.items():
            setting = self.config.rules.get(rule)
            if setting is None or not setting.enabled:
                continue
            if check(features, signals):
                contributions[rule] = setting.weight

        total = min(max(sum(contributions.values()), 0.0), 1.0)
        return RiskScore(
            score=total,
            triggered_rules=list(contributions),
            contributions=contributions,
        )
