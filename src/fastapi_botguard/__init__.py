"""FastAPI BotGuard - behavioural bot detection for FastAPI applications.

BotGuard collects client interaction signals (timing, pointer movement,
scrolling, keystroke rhythm), reduces them to a feature vector, scores them
together with server-side signals (IP reputation, User-Agent, JavaScript
execution) and maps the score to allow / challenge / block per page
sensitivity tier. A sliding window rate limiter bounds request volume per
identity key.

Key Components:
    - BotDetectionEngine: ties collection, scoring and the decision policy together
    - bot_guard_shield: decorator protecting an endpoint with the engine
    - rate_limit: standalone sliding window rate limiting shield
    - create_app: FastAPI app exposing the collection endpoints

Usage:
    ```python
    from fastapi_botguard import BotDetectionEngine, SensitivityTier, bot_guard_shield

    engine = BotDetectionEngine()

    @app.post("/checkout")
    @bot_guard_shield(engine, tier=SensitivityTier.HIGH)
    def checkout():
        return {"ok": True}
    ```
"""

from fastapi_botguard.shield import Shield, shield
from fastapi_botguard.app import create_app, create_router
from fastapi_botguard.bot_detection import (
    BotDetectionEngine,
    BotGuardShield,
    Evaluation,
    bot_guard_shield,
)
from fastapi_botguard.collector import CollectorConfig, Session, SessionStore, SignalCollector
from fastapi_botguard.config import BotGuardConfig, ConfigManager, ConfigSource, load_config
from fastapi_botguard.errors import (
    BotGuardError,
    ConfigurationError,
    ExternalServiceError,
    ExternalServiceTimeout,
    FailurePolicy,
    RateExceeded,
    register_exception_handlers,
)
from fastapi_botguard.events import (
    EventType,
    KeystrokeEvent,
    PointerMoveEvent,
    ScrollEvent,
    TimingEvent,
)
from fastapi_botguard.features import FeatureConfig, FeatureExtractor, FeatureVector
from fastapi_botguard.policy import Action, Decision, DecisionPolicy, PolicyConfig, SensitivityTier
from fastapi_botguard.rate_limit import (
    MemoryRateLimitBackend,
    RateLimitBackend,
    RateLimitConfig,
    RateLimitShield,
    SlidingWindowRateLimiter,
    per_ip_rate_limit,
    rate_limit,
)
from fastapi_botguard.recaptcha import RecaptchaConfig, RecaptchaVerifier
from fastapi_botguard.reputation import (
    HttpIPReputationProvider,
    IPReputationProvider,
    ReputationChecker,
    ReputationConfig,
    StaticIPReputationProvider,
)
from fastapi_botguard.risk import (
    RiskConfig,
    RiskScore,
    RiskScorer,
    RuleId,
    SideSignals,
    UserAgentClass,
    classify_user_agent,
)

__version__ = "0.1.0"

__all__ = [
    "Shield",
    "shield",
    "create_app",
    "create_router",
    "BotDetectionEngine",
    "BotGuardShield",
    "Evaluation",
    "bot_guard_shield",
    "CollectorConfig",
    "Session",
    "SessionStore",
    "SignalCollector",
    "BotGuardConfig",
    "ConfigManager",
    "ConfigSource",
    "load_config",
    "BotGuardError",
    "ConfigurationError",
    "ExternalServiceError",
    "ExternalServiceTimeout",
    "FailurePolicy",
    "RateExceeded",
    "register_exception_handlers",
    "EventType",
    "KeystrokeEvent",
    "PointerMoveEvent",
    "ScrollEvent",
    "TimingEvent",
    "FeatureConfig",
    "FeatureExtractor",
    "FeatureVector",
    "Action",
    "Decision",
    "DecisionPolicy",
    "PolicyConfig",
    "SensitivityTier",
    "MemoryRateLimitBackend",
    "RateLimitBackend",
    "RateLimitConfig",
    "RateLimitShield",
    "SlidingWindowRateLimiter",
    "per_ip_rate_limit",
    "rate_limit",
    "RecaptchaConfig",
    "RecaptchaVerifier",
    "HttpIPReputationProvider",
    "IPReputationProvider",
    "ReputationChecker",
    "ReputationConfig",
    "StaticIPReputationProvider",
    "RiskConfig",
    "RiskScore",
    "RiskScorer",
    "RuleId",
    "SideSignals",
    "UserAgentClass",
    "classify_user_agent",
]
