import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import httpx
import structlog
from dateutil import parser as dateparser

from billing.config import GatewayConfig
from billing.errors import AuthFailure, embedded_error

logger = structlog.get_logger(__name__)

TOKEN_CACHE_KEY = "pesapal_access_token"
EXPIRY_SAFETY_MARGIN = timedelta(minutes=5)
MIN_TOKEN_TTL = timedelta(minutes=1)
DEFAULT_TOKEN_TTL = timedelta(minutes=50)


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: Optional[datetime] = None


class TokenCache(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: timedelta) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryTokenCache:
    """Process-local cache. Expired entries are dropped on read."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, deadline = entry
            if self._clock() >= deadline:
                del self._entries[key]
                return None
            return value

    def set(self, key, value, ttl):
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl.total_seconds())

    def delete(self, key):
        with self._lock:
            self._entries.pop(key, None)


def parse_expiry(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        expiry = dateparser.isoparse(str(raw))
    except (ValueError, OverflowError):
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


def compute_ttl(expires_at: Optional[datetime], now: datetime) -> timedelta:
    if expires_at is None:
        return DEFAULT_TOKEN_TTL
    ttl = expires_at - now - EXPIRY_SAFETY_MARGIN
    return max(ttl, MIN_TOKEN_TTL)


class TokenCacheManager:
    def __init__(
        self,
        config: GatewayConfig,
        cache: TokenCache = None,
        http_client: httpx.Client = None,
        now=None,
    ):
        self.config = config
        self.cache = cache if cache is not None else InMemoryTokenCache()
        self.http = http_client or httpx.Client(
            verify=config.verify_tls, timeout=config.timeout
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

        if not config.verify_tls:
            logger.warning("pesapal_tls_verification_disabled", base_url=config.base_url)

    def get_access_token(self) -> str:
        cached = self.cache.get(TOKEN_CACHE_KEY)
        if cached:
            logger.debug("pesapal_token_cache_hit")
            return cached

        token = self.request_token()
        ttl = compute_ttl(token.expires_at, self._now())
        self.cache.set(TOKEN_CACHE_KEY, token.token, ttl)
        logger.info("pesapal_token_cached", ttl_seconds=int(ttl.total_seconds()))
        return token.token

    def request_token(self) -> AccessToken:
        if not self.config.has_credentials:
            logger.error("pesapal_token_failed", reason="credentials not configured")
            raise AuthFailure("Pesapal credentials not configured properly")

        url = f"{self.config.base_url}/api/Auth/RequestToken"
        logger.info("pesapal_token_requested", url=url)

        try:
            response = self.http.post(
                url,
                json={
                    "consumer_key": self.config.consumer_key,
                    "consumer_secret": self.config.consumer_secret,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("pesapal_token_failed", reason="transport", error=str(e))
            raise AuthFailure(f"Token request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "pesapal_token_failed",
                status=response.status_code,
                response=response.text,
            )
            raise AuthFailure(
                f"Token request failed: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error("pesapal_token_failed", reason="invalid json")
            raise AuthFailure("Token response is not valid JSON") from e

        error = embedded_error(data)
        if error or not isinstance(data, dict) or not data.get("token"):
            logger.error("pesapal_token_failed", reason="missing token", error=error)
            raise AuthFailure("Token missing from Pesapal response", error=error)

        return AccessToken(token=data["token"], expires_at=parse_expiry(data.get("expiryDate")))

    def invalidate(self):
        self.cache.delete(TOKEN_CACHE_KEY)
