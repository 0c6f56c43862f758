"""Bot detection engine and shield for FastAPI BotGuard.

Data flow per evaluated request:

    rate limiter -> session lookup -> feature extractor -> risk scorer
    (+ IP reputation, User-Agent class, JS beacon) -> reCAPTCHA blend
    -> decision policy -> allow / challenge / block
"""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, ConfigDict

from fastapi_botguard.collector import SessionStore
from fastapi_botguard.config import BotGuardConfig
from fastapi_botguard.consts import (
    CHALLENGE_HEADER,
    DECISION_HEADER,
    SCORE_HEADER,
    SESSION_COOKIE_NAME,
)
from fastapi_botguard.errors import RateExceeded
from fastapi_botguard.events import BaseEvent
from fastapi_botguard.features import FeatureExtractor, FeatureVector
from fastapi_botguard.policy import Action, Decision, DecisionPolicy, SensitivityTier
from fastapi_botguard.rate_limit import RateLimitStatus, SlidingWindowRateLimiter
from fastapi_botguard.recaptcha import RecaptchaVerifier, create_recaptcha_verifier
from fastapi_botguard.reputation import ReputationChecker, create_reputation_checker
from fastapi_botguard.risk import RiskScore, RiskScorer, SideSignals, UserAgentClassifier
from fastapi_botguard.shield import Shield, shield
from fastapi_botguard.utils import derive_identity_key, get_client_ip

logger = logging.getLogger(__name__)


class Evaluation(BaseModel):
    """Everything that went into one decision."""

    model_config = ConfigDict(frozen=True)

    key: str
    decision: Decision
    risk: RiskScore
    features: FeatureVector
    signals: SideSignals
    rate_limit: Optional[RateLimitStatus] = None

    @property
    def action(self) -> Action:
        return self.decision.action

    def headers(self) -> Dict[str, str]:
        return {
            DECISION_HEADER: self.decision.action.value,
            SCORE_HEADER: f"{self.decision.score:.3f}",
        }


class BotDetectionEngine:
    """Main bot detection engine."""

    def __init__(
        self,
        config: Optional[BotGuardConfig] = None,
        reputation_checker: Optional[ReputationChecker] = None,
        recaptcha_verifier: Optional[RecaptchaVerifier] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        sessions: Optional[SessionStore] = None,
    ):
        """Initialize the engine.

        Args:
            config: Engine configuration (defaults for everything if omitted)
            reputation_checker: IP reputation collaborator (built from config if omitted)
            recaptcha_verifier: reCAPTCHA collaborator (built from config if omitted)
            rate_limiter: Limiter applied before every evaluation
            sessions: Session store shared with the collection endpoints
        """
        self.config = config or BotGuardConfig()
        self.sessions = sessions or SessionStore(self.config.collector)
        self.extractor = FeatureExtractor(self.config.features)
        self.scorer = RiskScorer(self.config.risk)
        self.policy = DecisionPolicy(self.config.policy)
        self.user_agents = UserAgentClassifier(self.config.risk.bot_user_agent_patterns)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(self.config.rate_limit)
        self.reputation = reputation_checker or create_reputation_checker(self.config.reputation)
        self.recaptcha = recaptcha_verifier or create_recaptcha_verifier(self.config.recaptcha)
        # idle rate windows are reclaimed by the session sweeper
        self.sessions.add_sweep_hook(self.rate_limiter.sweep)

    def ingest(self, key: str, events: Iterable[BaseEvent], now: Optional[float] = None) -> int:
        """Append client events to the session; returns the buffer size."""
        session = self.sessions.record(key, events, now)
        return len(session.collector)

    def mark_js_executed(self, key: str, now: Optional[float] = None) -> None:
        self.sessions.mark_js_executed(key, now)

    def end_session(self, key: str) -> bool:
        return self.sessions.end(key)

    def features(self, key: str, now: Optional[float] = None) -> FeatureVector:
        _, features = self.sessions.snapshot(key, self.extractor, now)
        return features if features is not None else self.extractor.extract(())

    def sweep(self, now: Optional[float] = None) -> Tuple[int, int]:
        """Drop expired sessions and idle rate windows; returns both counts."""
        now = time.time() if now is None else now
        return self.sessions.sweep(now), self.rate_limiter.sweep(now)

    @staticmethod
    def rate_limit_key(key: str, ip_address: Optional[str]) -> str:
        """Requests are counted per client address, the session key is the fallback."""
        if ip_address and ip_address != "unknown":
            return f"ip:{ip_address}"
        return key

    async def evaluate(
        self,
        key: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        tier: SensitivityTier = SensitivityTier.LOW,
        recaptcha_token: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Evaluation:
        """Score one request and decide what to do with it.

        Raises:
            RateExceeded: The client address (or the session key when the
                address is unknown) is over its sliding window
        """
        now = time.time() if now is None else now
        rate_status = self.rate_limiter.check_and_record(self.rate_limit_key(key, ip_address), now)

        session = self.sessions.get_or_create(key, now)
        _, features = self.sessions.snapshot(key, self.extractor, now)
        if features is None:
            features = self.extractor.extract(())

        ip_verdict, recaptcha_score = await asyncio.gather(
            self.reputation.check(ip_address),
            self.recaptcha.verify(recaptcha_token, ip_address) if self.recaptcha else _none(),
        )

        signals = SideSignals(
            ip_reputation=ip_verdict,
            user_agent_class=self.user_agents.classify(user_agent),
            js_executed=session.js_executed(now, self.config.collector.js_beacon_timeout_seconds),
        )
        risk = self.scorer.score(features, signals)
        decision = self.policy.evaluate(risk, tier, recaptcha_score)

        logger.debug(
            f"Session {key[:8]}: score={decision.score:.3f} action={decision.action.value} "
            f"rules={[r.value for r in risk.triggered_rules]}"
        )
        return Evaluation(
            key=key,
            decision=decision,
            risk=risk,
            features=features,
            signals=signals,
            rate_limit=rate_status,
        )


async def _none() -> None:
    return None


def request_identity_key(request: Request, trusted_proxies: Optional[Sequence[str]] = None) -> str:
    """Identity key from the connection address and the session cookie.

    Without a cookie the key depends on the address alone.
    """
    return derive_identity_key(
        get_client_ip(request, trusted_proxies), request.cookies.get(SESSION_COOKIE_NAME)
    )


class BotGuardShield:
    """Bot detection shield for FastAPI endpoints."""

    def __init__(self, engine: BotDetectionEngine):
        self.engine = engine

    def create_shield(
        self,
        tier: SensitivityTier = SensitivityTier.LOW,
        name: str = "BotGuard",
    ) -> Shield:
        """Create a shield evaluating every request at the given tier.

        A reCAPTCHA token, when the client has one, is read from the
        ``X-Recaptcha-Token`` header.
        """
        engine = self.engine
        include_headers = engine.config.include_decision_headers
        trusted_proxies = engine.config.trusted_proxies

        async def bot_guard_shield(request: Request) -> Dict[str, Any]:
            try:
                evaluation = await engine.evaluate(
                    key=request_identity_key(request, trusted_proxies),
                    ip_address=get_client_ip(request, trusted_proxies),
                    user_agent=request.headers.get("user-agent"),
                    tier=tier,
                    recaptcha_token=request.headers.get("x-recaptcha-token"),
                )
            except RateExceeded as exc:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Rate limit exceeded",
                    headers=exc.headers(),
                )

            headers = evaluation.headers() if include_headers else {}
            if evaluation.action == Action.BLOCK:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Access denied: automated traffic suspected",
                    headers=headers or None,
                )
            if evaluation.action == Action.CHALLENGE:
                headers[CHALLENGE_HEADER] = "recaptcha"
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Additional verification required",
                    headers=headers,
                )

            return {"bot_guard_passed": True, "evaluation": evaluation}

        return shield(bot_guard_shield, name=name, auto_error=True)


def bot_guard_shield(
    engine: BotDetectionEngine,
    tier: SensitivityTier = SensitivityTier.LOW,
    name: str = "BotGuard",
) -> Shield:
    """Create a bot guard shield.

    Examples:
        ```python
        engine = BotDetectionEngine()

        @app.post("/checkout")
        @bot_guard_shield(engine, tier=SensitivityTier.HIGH)
        def checkout():
            return {"ok": True}
        ```
    """
    return BotGuardShield(engine).create_shield(tier=tier, name=name)
