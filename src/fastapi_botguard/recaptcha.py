"""reCAPTCHA v3 verification.

Google's siteverify endpoint is treated as a remote scoring oracle: given the
client token it answers with a float in [0, 1], 1.0 meaning "very likely
human". The verifier only fetches that number; the decision policy decides
how much weight it gets.
"""

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from fastapi_botguard.errors import ExternalServiceError, ExternalServiceTimeout, FailurePolicy

logger = logging.getLogger(__name__)

SERVICE_NAME = "recaptcha"
SITEVERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


class RecaptchaConfig(BaseModel):
    """Configuration for reCAPTCHA v3 verification."""

    enabled: bool = False
    secret_key: Optional[str] = None
    verify_url: str = SITEVERIFY_URL
    timeout_seconds: float = Field(default=3.0, gt=0)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    expected_action: Optional[str] = None


class RecaptchaVerifier:
    """Fetches reCAPTCHA v3 scores with a bounded timeout."""

    def __init__(self, config: RecaptchaConfig):
        if not config.secret_key:
            raise ValueError("RecaptchaVerifier requires a secret_key")
        self.config = config

    async def _siteverify(self, token: str, remote_ip: Optional[str]) -> float:
        data = {"secret": self.config.secret_key, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(self.config.verify_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise ExternalServiceTimeout(SERVICE_NAME, self.config.timeout_seconds) from e
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise ExternalServiceError(SERVICE_NAME, str(e) or type(e).__name__) from e

        if not payload.get("success"):
            codes = payload.get("error-codes", [])
            raise ExternalServiceError(SERVICE_NAME, f"verification rejected: {codes}")
        if self.config.expected_action and payload.get("action") != self.config.expected_action:
            raise ExternalServiceError(
                SERVICE_NAME, f"unexpected action '{payload.get('action')}'"
            )

        score = payload.get("score")
        if not isinstance(score, (int, float)) or isinstance(score, bool):
            raise ExternalServiceError(SERVICE_NAME, "response carries no score")
        return min(max(float(score), 0.0), 1.0)

    def _failure_score(self) -> Optional[float]:
        # fail closed reads the missing score as "certainly a bot"
        return 0.0 if self.config.failure_policy == FailurePolicy.FAIL_CLOSED else None

    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> Optional[float]:
        """Score for ``token``, or None when there is no opinion.

        Never raises; failures go through the configured failure policy.
        """
        if not token:
            return None
        try:
            return await asyncio.wait_for(
                self._siteverify(token, remote_ip),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"reCAPTCHA verification timed out after {self.config.timeout_seconds:g}s, "
                f"applying {self.config.failure_policy.value}"
            )
        except ExternalServiceError as e:
            logger.warning(
                f"reCAPTCHA verification failed ({e.message}), "
                f"applying {self.config.failure_policy.value}"
            )
        except Exception as e:
            logger.warning(
                f"reCAPTCHA verification raised {type(e).__name__}: {e}, "
                f"applying {self.config.failure_policy.value}"
            )
        return self._failure_score()


def create_recaptcha_verifier(config: RecaptchaConfig) -> Optional[RecaptchaVerifier]:
    if not config.enabled:
        return None
    if not config.secret_key:
        logger.warning("reCAPTCHA enabled without a secret_key; verification is skipped")
        return None
    return RecaptchaVerifier(config)
