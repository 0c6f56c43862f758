"""Tests for reCAPTCHA v3 verification."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from fastapi_botguard.errors import FailurePolicy
from fastapi_botguard.recaptcha import (
    SITEVERIFY_URL,
    RecaptchaConfig,
    RecaptchaVerifier,
    create_recaptcha_verifier,
)


def mock_siteverify(mock_client_class, payload=None, side_effect=None):
    client = MagicMock()
    if side_effect is not None:
        client.post = AsyncMock(side_effect=side_effect)
    else:
        response = Mock()
        response.json.return_value = payload
        response.raise_for_status.return_value = None
        client.post = AsyncMock(return_value=response)
    mock_client_class.return_value.__aenter__.return_value = client
    return client


@pytest.fixture
def verifier():
    return RecaptchaVerifier(RecaptchaConfig(enabled=True, secret_key="test-secret"))


class TestRecaptchaVerifier:
    """Test score retrieval."""

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            RecaptchaVerifier(RecaptchaConfig(enabled=True))

    @pytest.mark.asyncio
    async def test_no_token_means_no_opinion(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            assert await verifier.verify(None) is None
            assert await verifier.verify("") is None
            mock_client_class.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_verification(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            client = mock_siteverify(
                mock_client_class, {"success": True, "score": 0.9, "action": "login"}
            )
            score = await verifier.verify("token-123", remote_ip="1.2.3.4")

        assert score == 0.9
        args, kwargs = client.post.call_args
        assert args[0] == SITEVERIFY_URL
        assert kwargs["data"] == {
            "secret": "test-secret",
            "response": "token-123",
            "remoteip": "1.2.3.4",
        }

    @pytest.mark.asyncio
    async def test_rejected_token_fail_open(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(
                mock_client_class, {"success": False, "error-codes": ["invalid-input-response"]}
            )
            assert await verifier.verify("bad-token") is None

    @pytest.mark.asyncio
    async def test_rejected_token_fail_closed(self):
        verifier = RecaptchaVerifier(RecaptchaConfig(
            enabled=True,
            secret_key="test-secret",
            failure_policy=FailurePolicy.FAIL_CLOSED,
        ))

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, {"success": False})
            assert await verifier.verify("bad-token") == 0.0

    @pytest.mark.asyncio
    async def test_unexpected_action(self):
        verifier = RecaptchaVerifier(RecaptchaConfig(
            enabled=True,
            secret_key="test-secret",
            expected_action="checkout",
        ))

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, {"success": True, "score": 0.9, "action": "login"})
            assert await verifier.verify("token") is None

    @pytest.mark.asyncio
    async def test_missing_score(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, {"success": True})
            assert await verifier.verify("token") is None

    @pytest.mark.asyncio
    async def test_network_error(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, side_effect=httpx.ConnectError("refused"))
            assert await verifier.verify("token") is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fail_open(self, verifier):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, side_effect=OSError("network unreachable"))
            assert await verifier.verify("token") is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fail_closed(self):
        verifier = RecaptchaVerifier(RecaptchaConfig(
            enabled=True,
            secret_key="test-secret",
            failure_policy=FailurePolicy.FAIL_CLOSED,
        ))

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, side_effect=ConnectionResetError("peer reset"))
            assert await verifier.verify("token") == 0.0

    @pytest.mark.asyncio
    async def test_slow_service_is_bounded(self):
        verifier = RecaptchaVerifier(RecaptchaConfig(
            enabled=True,
            secret_key="test-secret",
            timeout_seconds=0.05,
            failure_policy=FailurePolicy.FAIL_CLOSED,
        ))

        async def slow_post(*args, **kwargs):
            await asyncio.sleep(1)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_siteverify(mock_client_class, side_effect=slow_post)
            assert await verifier.verify("token") == 0.0


class TestCreateRecaptchaVerifier:
    """Test verifier construction from configuration."""

    def test_disabled(self):
        assert create_recaptcha_verifier(RecaptchaConfig(secret_key="x")) is None

    def test_enabled_without_secret(self):
        assert create_recaptcha_verifier(RecaptchaConfig(enabled=True)) is None

    def test_enabled(self):
        verifier = create_recaptcha_verifier(RecaptchaConfig(enabled=True, secret_key="x"))
        assert isinstance(verifier, RecaptchaVerifier)
