"""
Tests for the verification and webhook relay routers via TestClient.
"""

from urllib.parse import parse_qs

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from formguard.config import ProxySettings, RateLimitConfig, SecurityConfig
from formguard.main import create_app
from formguard.proxy import create_verification_proxy, create_webhook_proxy
from formguard.ratelimit import SlidingWindowRateLimiter
from tests.conftest import Upstream

SECRET = "server-only-secret"


def verify_app(upstream, max_requests=10, allowed_actions=("submit_waitlist",), store=None, trusted_proxies=None):
    limiter = SlidingWindowRateLimiter(RateLimitConfig(max=max_requests, window_sec=60), store=store)
    app = FastAPI()
    app.include_router(
        create_verification_proxy(SECRET, limiter, min_score=0.5, allowed_actions=list(allowed_actions),
                                  client=upstream.client(), trusted_proxies=trusted_proxies),
        prefix="/api/recaptcha",
    )
    return TestClient(app)


def webhook_app(upstream, allowed=None, secret_key=None, max_requests=10):
    limiter = SlidingWindowRateLimiter(RateLimitConfig(max=max_requests, window_sec=60))
    app = FastAPI()
    app.include_router(
        create_webhook_proxy(limiter, allowed_destinations=allowed, secret_key=secret_key,
                             client=upstream.client()),
        prefix="/api",
    )
    return TestClient(app)


# --- Verification relay ---


def test_verify_success_forwards_secret_not_to_caller(upstream):
    client = verify_app(upstream, trusted_proxies=["testclient"])
    resp = client.post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"},
                       headers={"X-Forwarded-For": "198.51.100.7, 203.0.113.9"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["score"] == 0.9
    assert SECRET not in resp.text

    sent = parse_qs(upstream.requests[0].content.decode())
    assert sent["secret"] == [SECRET]
    assert sent["response"] == ["tok"]
    assert sent["remoteip"] == ["203.0.113.9"]


@pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
def test_verify_rejects_other_methods(upstream, method):
    resp = verify_app(upstream).request(method, "/api/recaptcha/verify")
    assert resp.status_code == 405
    assert upstream.requests == []


@pytest.mark.parametrize("payload", [{}, {"token": ""}, {"token": 123}, {"action": "submit_waitlist"}])
def test_verify_requires_token(upstream, payload):
    resp = verify_app(upstream).post("/api/recaptcha/verify", json=payload)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Token is required"
    assert upstream.requests == []


def test_verify_rejects_action_outside_allow_list_before_upstream(upstream):
    resp = verify_app(upstream).post("/api/recaptcha/verify", json={"token": "tok", "action": "login"})
    assert resp.status_code == 403
    assert resp.json()["errorKind"] == "action_mismatch"
    assert upstream.requests == []


def test_verify_rate_limit_rejects_before_upstream(upstream):
    client = verify_app(upstream, max_requests=2)
    codes = [client.post("/api/recaptcha/verify", json={"token": f"t{i}", "action": "submit_waitlist"}).status_code
             for i in range(3)]
    assert codes == [200, 200, 429]
    assert len(upstream.requests) == 2


def test_rate_limited_response_has_retry_after(upstream):
    client = verify_app(upstream, max_requests=1)
    client.post("/api/recaptcha/verify", json={"token": "a", "action": "submit_waitlist"})
    resp = client.post("/api/recaptcha/verify", json={"token": "b", "action": "submit_waitlist"})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    assert resp.json()["retryAfter"] >= 1


def test_verify_low_score_is_forbidden():
    upstream = Upstream(body={"success": True, "score": 0.2, "action": "submit_waitlist"})
    resp = verify_app(upstream).post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"})
    assert resp.status_code == 403
    assert resp.json() == {"success": False, "score": 0.2, "error": "reCAPTCHA score too low",
                           "errorKind": "low_score"}


def test_verify_upstream_failure_is_reported_as_failed():
    upstream = Upstream(body={"success": False, "error-codes": ["invalid-input-response"]})
    resp = verify_app(upstream).post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"})
    assert resp.status_code == 400
    assert resp.json()["error-codes"] == ["invalid-input-response"]
    assert resp.json()["errorKind"] == "verification_failed"


def test_verify_action_mismatch_from_upstream():
    upstream = Upstream(body={"success": True, "score": 0.9, "action": "other"})
    resp = verify_app(upstream).post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"})
    assert resp.status_code == 400
    assert resp.json()["errorKind"] == "action_mismatch"


@pytest.mark.parametrize("upstream", [
    Upstream(error=httpx.ConnectError("connection refused to google with secret")),
    Upstream(status_code=500, body={"internal": "stack trace"}),
])
def test_verify_hides_upstream_errors(upstream):
    resp = verify_app(upstream).post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"})
    assert resp.status_code == 502
    assert resp.json() == {"success": False, "error": "Failed to verify reCAPTCHA token"}


def test_injected_store_keeps_windows_between_apps(upstream):
    store = MemoryStorage()
    first = verify_app(upstream, max_requests=1, store=store)
    second = verify_app(upstream, max_requests=1, store=store)
    assert first.post("/api/recaptcha/verify", json={"token": "a", "action": "submit_waitlist"}).status_code == 200
    assert second.post("/api/recaptcha/verify", json={"token": "b", "action": "submit_waitlist"}).status_code == 429


# --- Webhook relay ---


def test_webhook_relays_payload_and_headers():
    upstream = Upstream(status_code=201, body={"id": "abc"})
    client = webhook_app(upstream, allowed=["https://hooks.example.com/"])
    resp = client.post("/api/webhook", json={
        "destination": "https://hooks.example.com/form",
        "payload": {"event": "success", "formData": {"email": "a@b.co"}},
        "headers": {"X-Api-Key": "k"},
    })
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "statusCode": 201, "response": {"id": "abc"}}
    sent = upstream.requests[0]
    assert str(sent.url) == "https://hooks.example.com/form"
    assert sent.headers["x-api-key"] == "k"
    assert upstream.json_bodies() == [{"event": "success", "formData": {"email": "a@b.co"}}]


def test_webhook_text_response_is_wrapped():
    upstream = Upstream(status_code=500, body="upstream down")
    resp = webhook_app(upstream).post("/api/webhook", json={"destination": "https://x.example", "payload": {}})
    assert resp.json() == {"success": False, "statusCode": 500, "response": {"text": "upstream down"}}


@pytest.mark.parametrize("payload,code", [
    ({"payload": {}}, 400),
    ({"destination": "https://hooks.example.com/x"}, 400),
    ({"destination": "ftp://hooks.example.com/x", "payload": {}}, 400),
    ({"destination": "https://evil.example.net/x", "payload": {}}, 403),
])
def test_webhook_rejects_before_forwarding(payload, code):
    upstream = Upstream()
    resp = webhook_app(upstream, allowed=["https://hooks.example.com/"]).post("/api/webhook", json=payload)
    assert resp.status_code == code
    assert upstream.requests == []


def test_webhook_secret_key_required_when_configured():
    upstream = Upstream()
    client = webhook_app(upstream, secret_key="hook-secret")
    body = {"destination": "https://x.example", "payload": {}}
    assert client.post("/api/webhook", json=body).status_code == 401
    assert client.post("/api/webhook", json={**body, "secretKey": "hook-secret"}).status_code == 200
    assert len(upstream.requests) == 1


def test_webhook_method_and_rate_limit():
    upstream = Upstream()
    client = webhook_app(upstream, max_requests=1)
    assert client.get("/api/webhook").status_code == 405
    body = {"destination": "https://x.example", "payload": {}}
    assert client.post("/api/webhook", json=body).status_code == 200
    assert client.post("/api/webhook", json=body).status_code == 429


def test_webhook_network_failure_is_generic():
    upstream = Upstream(error=httpx.ConnectError("refused"))
    resp = webhook_app(upstream).post("/api/webhook", json={"destination": "https://x.example", "payload": {}})
    assert resp.status_code == 502
    assert resp.json() == {"success": False, "error": "Webhook delivery failed"}


# --- Client keys ---


def test_forwarded_header_from_untrusted_peer_does_not_change_the_key(upstream):
    client = verify_app(upstream, max_requests=1)
    codes = [
        client.post("/api/recaptcha/verify", json={"token": f"t{i}", "action": "submit_waitlist"},
                    headers={"X-Forwarded-For": f"198.51.100.{i}"}).status_code
        for i in range(5)
    ]
    assert codes == [200, 429, 429, 429, 429]
    assert len(upstream.requests) == 1


def test_trusted_proxy_keys_on_the_hop_it_appended(upstream):
    client = verify_app(upstream, max_requests=1, trusted_proxies=["testclient"])
    first = client.post("/api/recaptcha/verify", json={"token": "a", "action": "submit_waitlist"},
                        headers={"X-Forwarded-For": "198.51.100.1, 203.0.113.9"})
    spoofed = client.post("/api/recaptcha/verify", json={"token": "b", "action": "submit_waitlist"},
                          headers={"X-Forwarded-For": "198.51.100.2, 203.0.113.9"})
    other = client.post("/api/recaptcha/verify", json={"token": "c", "action": "submit_waitlist"},
                        headers={"X-Forwarded-For": "203.0.113.10"})
    assert [first.status_code, spoofed.status_code, other.status_code] == [200, 429, 200]


def test_relays_in_one_app_keep_separate_windows(upstream):
    app = create_app(
        security=SecurityConfig(),
        settings=ProxySettings(recaptcha_secret=SECRET, rate_limit=RateLimitConfig(max=1, window_sec=60)),
        verify_client=upstream.client(),
        webhook_client=upstream.client(),
        webhook_targets=[],
        log_dir=None,
    )
    client = TestClient(app)
    hook = client.post("/api/webhook", json={"destination": "https://x.example", "payload": {}})
    verify = client.post("/api/recaptcha/verify", json={"token": "tok", "action": "submit_waitlist"})
    assert hook.status_code == 200
    assert verify.status_code == 200
    assert client.post("/api/webhook", json={"destination": "https://x.example", "payload": {}}).status_code == 429
