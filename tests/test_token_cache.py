from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from billing.errors import AuthFailure
from billing.token_cache import (
    TOKEN_CACHE_KEY,
    InMemoryTokenCache,
    TokenCacheManager,
    compute_ttl,
    parse_expiry,
)

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class RecordingCache:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ttl):
        self.values[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.values.pop(key, None)


def test_ttl_subtracts_safety_margin():
    assert compute_ttl(NOW + timedelta(minutes=65), NOW) == timedelta(minutes=60)


def test_ttl_defaults_to_fifty_minutes_without_expiry():
    assert compute_ttl(None, NOW) == timedelta(minutes=50)


def test_ttl_floors_at_one_minute():
    assert compute_ttl(NOW + timedelta(minutes=2), NOW) == timedelta(minutes=1)
    assert compute_ttl(NOW - timedelta(hours=1), NOW) == timedelta(minutes=1)


def test_parse_expiry_handles_missing_and_garbage():
    assert parse_expiry(None) is None
    assert parse_expiry("") is None
    assert parse_expiry("not a date") is None
    assert parse_expiry("2026-01-15T10:05:00Z") == NOW + timedelta(minutes=65)


def test_naive_expiry_is_treated_as_utc():
    assert parse_expiry("2026-01-15T10:05:00") == NOW + timedelta(minutes=65)


def test_token_cached_with_provider_expiry(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", json={
        "token": "tok-abc",
        "expiryDate": (NOW + timedelta(minutes=65)).isoformat(),
        "error": None,
    })
    cache = RecordingCache()
    manager = TokenCacheManager(config, cache=cache, http_client=http_client, now=lambda: NOW)

    assert manager.get_access_token() == "tok-abc"
    assert cache.ttls[TOKEN_CACHE_KEY] == timedelta(minutes=60)


def test_token_without_expiry_uses_default_ttl(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", json={"token": "tok-abc"})
    cache = RecordingCache()
    manager = TokenCacheManager(config, cache=cache, http_client=http_client, now=lambda: NOW)

    manager.get_access_token()

    assert cache.ttls[TOKEN_CACHE_KEY] == timedelta(minutes=50)


def test_cache_hit_makes_no_request(token_manager, pesapal):
    first = token_manager.get_access_token()
    second = token_manager.get_access_token()

    assert first == second == "tok-1"
    assert len(pesapal.calls("/api/Auth/RequestToken")) == 1


def test_token_request_sends_credentials(token_manager, pesapal):
    token_manager.get_access_token()

    request = pesapal.calls("/api/Auth/RequestToken")[0]
    assert request.method == "POST"
    assert "Authorization" not in request.headers
    assert b'"consumer_key":"test-key"' in request.content.replace(b" ", b"")


def test_non_2xx_is_auth_failure_and_not_cached(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", status=401, text="bad credentials")
    cache = RecordingCache()
    manager = TokenCacheManager(config, cache=cache, http_client=http_client)

    with pytest.raises(AuthFailure) as exc:
        manager.get_access_token()

    assert "bad credentials" in exc.value.detail
    assert cache.values == {}


def test_missing_token_field_is_auth_failure(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", json={"expiryDate": None, "status": "200"})
    manager = TokenCacheManager(config, cache=RecordingCache(), http_client=http_client)

    with pytest.raises(AuthFailure):
        manager.get_access_token()


def test_error_in_success_body_is_auth_failure(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", json={
        "token": None,
        "error": {"code": "invalid_consumer_key_or_secret_provided"},
        "status": "500",
    })
    manager = TokenCacheManager(config, cache=RecordingCache(), http_client=http_client)

    with pytest.raises(AuthFailure):
        manager.get_access_token()


def test_transport_error_is_auth_failure(config):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.Client(transport=httpx.MockTransport(boom))
    manager = TokenCacheManager(config, cache=RecordingCache(), http_client=http)

    with pytest.raises(AuthFailure):
        manager.get_access_token()


def test_failure_is_retried_on_next_call(config, http_client, pesapal):
    pesapal.reply("/api/Auth/RequestToken", status=503, text="unavailable")
    manager = TokenCacheManager(config, cache=InMemoryTokenCache(), http_client=http_client)

    with pytest.raises(AuthFailure):
        manager.get_access_token()

    pesapal.reply("/api/Auth/RequestToken", json={"token": "tok-2"})
    assert manager.get_access_token() == "tok-2"
    assert len(pesapal.calls("/api/Auth/RequestToken")) == 2


def test_placeholder_credentials_fail_without_request(config, http_client, pesapal):
    manager = TokenCacheManager(
        replace(config, consumer_key="your_consumer_key_here"),
        cache=RecordingCache(),
        http_client=http_client,
    )

    with pytest.raises(AuthFailure):
        manager.get_access_token()
    assert pesapal.requests == []


def test_in_memory_cache_expires_entries():
    ticks = [100.0]
    cache = InMemoryTokenCache(clock=lambda: ticks[0])
    cache.set("k", "v", timedelta(seconds=60))

    assert cache.get("k") == "v"
    ticks[0] = 159.0
    assert cache.get("k") == "v"
    ticks[0] = 160.0
    assert cache.get("k") is None
