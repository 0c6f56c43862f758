"""IP reputation lookups for FastAPI BotGuard.

The reputation service is an untrusted, fallible remote collaborator. The
``ReputationChecker`` bounds every lookup with a timeout and reads failures
through an explicit ``FailurePolicy`` so a slow or broken service can never
stall or crash scoring.
"""

import asyncio
import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from fastapi_botguard.errors import ExternalServiceError, ExternalServiceTimeout, FailurePolicy

logger = logging.getLogger(__name__)

SERVICE_NAME = "ip_reputation"


class ReputationConfig(BaseModel):
    """Configuration for the IP reputation collaborator."""

    enabled: bool = False
    url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "Key"
    timeout_seconds: float = Field(default=2.0, gt=0)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    cache_ttl_seconds: float = Field(default=300.0, ge=0)
    max_cache_entries: int = Field(default=10000, gt=0)
    malicious_field: str = "malicious"
    score_field: str = "abuseConfidenceScore"
    score_threshold: float = Field(default=50.0, ge=0)
    skip_private_addresses: bool = True


class IPReputationProvider(ABC):
    """Abstract base class for IP reputation providers."""

    @abstractmethod
    async def is_malicious(self, ip_address: str) -> bool:
        """Return True if the provider flags the address.

        Raises:
            ExternalServiceError: The provider could not answer
        """
        pass


class StaticIPReputationProvider(IPReputationProvider):
    """Fixed block list of addresses and networks."""

    def __init__(self, blocked: Iterable[str] = ()):
        self._networks = [ipaddress.ip_network(entry, strict=False) for entry in blocked]

    async def is_malicious(self, ip_address: str) -> bool:
        try:
            address = ipaddress.ip_address(ip_address)
        except ValueError:
            return False
        return any(address in network for network in self._networks)


class HttpIPReputationProvider(IPReputationProvider):
    """Reputation service reached with ``GET {url}/{ip}``.

    The JSON answer is read leniently: a truthy ``malicious_field`` or a
    ``score_field`` at or above ``score_threshold`` flags the address. Both
    fields may sit at the top level or under ``data``.
    """

    def __init__(self, config: ReputationConfig):
        if not config.url:
            raise ValueError("HttpIPReputationProvider requires a url")
        self.config = config
        self.base_url = config.url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers[self.config.api_key_header] = self.config.api_key
        return headers

    def _read_verdict(self, payload: dict) -> bool:
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        if not isinstance(data, dict):
            return False
        if data.get(self.config.malicious_field):
            return True
        score = data.get(self.config.score_field)
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            return score >= self.config.score_threshold
        return False

    async def is_malicious(self, ip_address: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.get(f"{self.base_url}/{ip_address}", headers=self._headers())
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise ExternalServiceTimeout(SERVICE_NAME, self.config.timeout_seconds) from e
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise ExternalServiceError(SERVICE_NAME, str(e) or type(e).__name__) from e
        return self._read_verdict(payload)


class ReputationChecker:
    """Bounded, cached, failure-tolerant reputation lookups."""

    def __init__(
        self,
        provider: Optional[IPReputationProvider],
        config: Optional[ReputationConfig] = None,
    ):
        self.provider = provider
        self.config = config or ReputationConfig()
        self._cache: Dict[str, Tuple[bool, float]] = {}

    def _failure_verdict(self) -> bool:
        return self.config.failure_policy == FailurePolicy.FAIL_CLOSED

    def _cached(self, ip_address: str, now: float) -> Optional[bool]:
        entry = self._cache.get(ip_address)
        if entry is None:
            return None
        verdict, stored_at = entry
        if now - stored_at >= self.config.cache_ttl_seconds:
            self._cache.pop(ip_address, None)
            return None
        return verdict

    def _store(self, ip_address: str, verdict: bool, now: float) -> None:
        if self.config.cache_ttl_seconds <= 0:
            return
        if len(self._cache) >= self.config.max_cache_entries:
            oldest = min(self._cache.items(), key=lambda item: item[1][1])[0]
            self._cache.pop(oldest, None)
        self._cache[ip_address] = (verdict, now)

    def _is_private(self, ip_address: str) -> bool:
        try:
            address = ipaddress.ip_address(ip_address)
        except ValueError:
            return False
        return address.is_private or address.is_loopback

    async def check(self, ip_address: Optional[str]) -> Optional[bool]:
        """Malicious verdict for an address, or None when no lookup applies.

        Never raises: timeouts and provider failures are mapped through the
        configured failure policy.
        """
        if self.provider is None or not ip_address or ip_address == "unknown":
            return None
        if self.config.skip_private_addresses and self._is_private(ip_address):
            return False

        now = time.time()
        cached = self._cached(ip_address, now)
        if cached is not None:
            return cached

        try:
            verdict = await asyncio.wait_for(
                self.provider.is_malicious(ip_address),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"IP reputation lookup for {ip_address} timed out after "
                f"{self.config.timeout_seconds:g}s, applying {self.config.failure_policy.value}"
            )
            return self._failure_verdict()
        except ExternalServiceError as e:
            logger.warning(
                f"IP reputation lookup for {ip_address} failed ({e.message}), "
                f"applying {self.config.failure_policy.value}"
            )
            return self._failure_verdict()
        except Exception as e:
            logger.warning(
                f"IP reputation provider raised {type(e).__name__} for {ip_address}: {e}, "
                f"applying {self.config.failure_policy.value}"
            )
            return self._failure_verdict()

        self._store(ip_address, verdict, now)
        return verdict


def create_reputation_checker(config: ReputationConfig) -> ReputationChecker:
    """Build the checker described by ``config`` (no provider when disabled)."""
    provider: Optional[IPReputationProvider] = None
    if config.enabled and config.url:
        provider = HttpIPReputationProvider(config)
    elif config.enabled:
        logger.warning("IP reputation enabled without a url; lookups are skipped")
    return ReputationChecker(provider, config)
