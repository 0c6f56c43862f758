"""FastAPI application exposing the signal-collection contract.

Browser collectors post event batches and the JavaScript beacon here; the
protected application calls ``/botguard/evaluate`` (or uses the shield
directly) to obtain a decision.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from fastapi import APIRouter, FastAPI, Request, Response
from pydantic import BaseModel

from fastapi_botguard.bot_detection import BotDetectionEngine
from fastapi_botguard.config import BotGuardConfig
from fastapi_botguard.consts import SESSION_COOKIE_NAME
from fastapi_botguard.errors import register_exception_handlers
from fastapi_botguard.events import EventBatch
from fastapi_botguard.features import FeatureVector
from fastapi_botguard.policy import Action, SensitivityTier
from fastapi_botguard.risk import RuleId
from fastapi_botguard.utils import derive_identity_key, get_client_ip

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    tier: SensitivityTier = SensitivityTier.LOW
    recaptcha_token: Optional[str] = None


class EvaluateResponse(BaseModel):
    action: Action
    score: float
    risk_score: float
    threshold: float
    recaptcha_score: Optional[float] = None
    triggered_rules: List[RuleId]


class IngestResponse(BaseModel):
    accepted: int
    buffered: int


def _session_cookie(request: Request, response: Response) -> Tuple[str, bool]:
    """The caller's session cookie and whether it was issued just now."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return cookie, False
    cookie = secrets.token_urlsafe(24)
    response.set_cookie(SESSION_COOKIE_NAME, cookie, httponly=True, samesite="lax")
    return cookie, True


def create_router(engine: BotDetectionEngine, prefix: str = "/botguard") -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["botguard"])
    trusted_proxies = engine.config.trusted_proxies

    def collection_key(request: Request, response: Response) -> str:
        cookie, _ = _session_cookie(request, response)
        return derive_identity_key(get_client_ip(request, trusted_proxies), cookie)

    def scoring_key(request: Request, response: Response) -> str:
        # a caller that presented no cookie is scored by address alone, so
        # dropping cookies never buys a fresh session
        cookie, issued = _session_cookie(request, response)
        return derive_identity_key(
            get_client_ip(request, trusted_proxies), None if issued else cookie
        )

    @router.post("/events", response_model=IngestResponse)
    def ingest_events(batch: EventBatch, request: Request, response: Response):
        key = collection_key(request, response)
        buffered = engine.ingest(key, batch.events)
        return IngestResponse(accepted=len(batch.events), buffered=buffered)

    @router.post("/beacon", status_code=204)
    def js_beacon(request: Request, response: Response):
        engine.mark_js_executed(collection_key(request, response))

    @router.get("/features", response_model=FeatureVector)
    def get_features(request: Request, response: Response):
        return engine.features(scoring_key(request, response))

    @router.post("/evaluate", response_model=EvaluateResponse)
    async def evaluate(body: EvaluateRequest, request: Request, response: Response):
        evaluation = await engine.evaluate(
            key=scoring_key(request, response),
            ip_address=get_client_ip(request, trusted_proxies),
            user_agent=request.headers.get("user-agent"),
            tier=body.tier,
            recaptcha_token=body.recaptcha_token,
        )
        if engine.config.include_decision_headers:
            response.headers.update(evaluation.headers())
        decision = evaluation.decision
        return EvaluateResponse(
            action=decision.action,
            score=decision.score,
            risk_score=decision.risk_score,
            threshold=decision.threshold,
            recaptcha_score=decision.recaptcha_score,
            triggered_rules=decision.triggered_rules,
        )

    @router.delete("/session", status_code=204)
    def end_session(request: Request, response: Response):
        cookie = request.cookies.get(SESSION_COOKIE_NAME)
        if cookie:
            ended = engine.end_session(
                derive_identity_key(get_client_ip(request, trusted_proxies), cookie)
            )
            logger.debug(f"Session end requested, found={ended}")
            response.delete_cookie(SESSION_COOKIE_NAME)

    return router


def create_app(
    config: Optional[BotGuardConfig] = None,
    engine: Optional[BotDetectionEngine] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """Build the collection application around an engine."""
    engine = engine or BotDetectionEngine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweeper:
            engine.sessions.start_sweeper()
        try:
            yield
        finally:
            if run_sweeper:
                await engine.sessions.stop_sweeper()

    app = FastAPI(title="BotGuard", lifespan=lifespan)
    app.state.engine = engine
    register_exception_handlers(app)
    app.include_router(create_router(engine))
    return app
