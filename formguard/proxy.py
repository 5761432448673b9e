"""Server-side relays for challenge verification and webhook delivery.

Untrusted callers post here instead of talking to Google or to webhook
destinations themselves, so the reCAPTCHA secret and per-destination
credentials stay on the server. Each request goes through:

    received -> rate_limit_check -> destination_allow_check -> upstream_call -> respond

and is rejected before the upstream call on a wrong method, a missing token
or destination, an exhausted rate limit, or an action/destination outside the
allow-list. Upstream failures are logged in full and answered generically.
"""

import hmac
from typing import Any, Dict, List, Optional, Sequence

import httpx
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from formguard.config.constants import (HTTP_TIMEOUT_SECONDS,
                                        RECAPTCHA_VERIFY_URL)
from formguard.logging_setup import get_logger
from formguard.ratelimit import SlidingWindowRateLimiter
from formguard.verification import (ErrorKind, SiteVerifyResponse,
                                    compute_verdict)

logger = get_logger("proxy")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def client_address(request: Request, trusted_proxies: Sequence[str] = ()) -> str:
    """Rate-limit key: the socket peer, or the X-Forwarded-For hop it vouches for.

    The header is only read when the peer is a trusted proxy. Hops are walked
    from the right and the first address that is not itself a trusted proxy
    wins, so a client cannot pick its own key by prepending entries.
    """
    if request.client is None:
        return "unknown"
    peer = get_remote_address(request)
    if peer not in trusted_proxies:
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    for hop in reversed([h.strip() for h in forwarded.split(",") if h.strip()]):
        if hop not in trusted_proxies:
            return hop
    return peer


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _rate_limited(
    limiter: SlidingWindowRateLimiter, request: Request, trusted_proxies: Sequence[str], **extra
) -> Optional[JSONResponse]:
    key = client_address(request, trusted_proxies)
    decision = limiter.check(key)
    if decision.admitted:
        return None
    logger.warning("Rate limit exceeded: client=%s count=%d", key, decision.count)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={**extra, "error": "Too many requests", "retryAfter": decision.retry_after},
        headers={"Retry-After": str(decision.retry_after)},
    )


def _method_not_allowed(**extra) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={**extra, "error": "Method not allowed"},
        headers={"Allow": "POST"},
    )


# ---------- Verification relay ----------

def create_verification_proxy(
    secret_key: str,
    limiter: SlidingWindowRateLimiter,
    min_score: float = 0.5,
    allowed_actions: Optional[List[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    verify_url: str = RECAPTCHA_VERIFY_URL,
    path: str = "/verify",
    timeout: float = HTTP_TIMEOUT_SECONDS,
    trusted_proxies: Optional[List[str]] = None,
) -> APIRouter:
    """Build the router that verifies tokens with the server-held secret.

    Args:
        secret_key: reCAPTCHA secret; never echoed in any response.
        limiter: Sliding-window limiter keyed by client address.
        min_score: Lowest score answered with ``success: true``.
        allowed_actions: Actions this relay verifies; empty allows any.
        client: Shared HTTP client; one per request when omitted.
        trusted_proxies: Peers whose X-Forwarded-For header is believed.
    """
    router = APIRouter()
    allowed = list(allowed_actions or [])
    proxies = list(trusted_proxies or [])

    async def call_siteverify(token: str, remote_ip: str) -> SiteVerifyResponse:
        data = {"secret": secret_key, "response": token}
        if remote_ip and remote_ip != "unknown":
            data["remoteip"] = remote_ip
        if client is not None:
            response = await client.post(verify_url, data=data)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as http:
                response = await http.post(verify_url, data=data)
        response.raise_for_status()
        return SiteVerifyResponse.model_validate(response.json())

    @router.api_route(path, methods=ALL_METHODS)
    async def verify_token(request: Request):
        if request.method != "POST":
            return _method_not_allowed(success=False)

        limited = _rate_limited(limiter, request, proxies, success=False)
        if limited is not None:
            return limited

        body = await _json_body(request)
        token = body.get("token")
        action = body.get("action")
        if not token or not isinstance(token, str):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "error": "Token is required"},
            )

        if action and allowed and action not in allowed:
            logger.warning("Rejected verification for action outside allow-list: %s", action)
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"success": False, "error": "Action not allowed",
                         "errorKind": ErrorKind.ACTION_MISMATCH.value},
            )

        try:
            data = await call_siteverify(token, client_address(request, proxies))
        except Exception:
            logger.exception("reCAPTCHA verification error")
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"success": False, "error": "Failed to verify reCAPTCHA token"},
            )

        if not data.success:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False,
                         "error-codes": data.error_codes or ["verification-failed"],
                         "errorKind": ErrorKind.VERIFICATION_FAILED.value},
            )

        verdict = compute_verdict(data, action or data.action, min_score)
        if verdict.error_kind == ErrorKind.ACTION_MISMATCH:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "score": data.score, "action": data.action,
                         "error": verdict.message, "errorKind": verdict.error_kind.value},
            )
        if allowed and data.action not in allowed:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"success": False, "error": "Action not allowed",
                         "errorKind": ErrorKind.ACTION_MISMATCH.value},
            )
        if not verdict.valid:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"success": False, "score": data.score,
                         "error": "reCAPTCHA score too low",
                         "errorKind": ErrorKind.LOW_SCORE.value},
            )

        logger.info("Relay verified token: action=%s score=%s", data.action, data.score)
        return {
            "success": True,
            "score": data.score,
            "action": data.action,
            "challenge_ts": data.challenge_ts,
            "hostname": data.hostname,
        }

    return router


# ---------- Webhook relay ----------

def create_webhook_proxy(
    limiter: SlidingWindowRateLimiter,
    allowed_destinations: Optional[List[str]] = None,
    secret_key: Optional[str] = None,
    default_headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    path: str = "/webhook",
    timeout: float = HTTP_TIMEOUT_SECONDS,
    trusted_proxies: Optional[List[str]] = None,
) -> APIRouter:
    """Build the router that forwards webhook payloads to allowed destinations.

    Request body: ``{destination, payload, headers?, secretKey?}``.
    Response body: ``{success, statusCode, response}``.
    """
    router = APIRouter()
    prefixes = list(allowed_destinations or [])
    proxies = list(trusted_proxies or [])

    async def forward(destination: str, payload: Any, headers: Dict[str, str]) -> httpx.Response:
        if client is not None:
            return await client.post(destination, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as http:
            return await http.post(destination, json=payload, headers=headers)

    @router.api_route(path, methods=ALL_METHODS)
    async def relay_webhook(request: Request):
        if request.method != "POST":
            return _method_not_allowed()

        limited = _rate_limited(limiter, request, proxies)
        if limited is not None:
            return limited

        body = await _json_body(request)
        destination = body.get("destination")
        payload = body.get("payload")
        if not destination or not isinstance(destination, str) or payload is None:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Missing required fields (destination, payload)"},
            )
        if not destination.startswith(("http://", "https://")):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Destination must be an http(s) URL"},
            )
        if prefixes and not any(destination.startswith(p) for p in prefixes):
            logger.warning("Rejected webhook to destination outside allow-list: %s", destination)
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"error": "Destination not allowed"},
            )
        if secret_key and not hmac.compare_digest(str(body.get("secretKey") or ""), secret_key):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": "Invalid secret key"},
            )

        extra_headers = body.get("headers") if isinstance(body.get("headers"), dict) else {}
        headers = {
            "Content-Type": "application/json",
            **(default_headers or {}),
            **{str(k): str(v) for k, v in extra_headers.items()},
        }

        try:
            upstream = await forward(destination, payload, headers)
        except httpx.HTTPError:
            logger.exception("Webhook proxy error: destination=%s", destination)
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"success": False, "error": "Webhook delivery failed"},
            )

        try:
            response_data = upstream.json()
        except ValueError:
            response_data = {"text": upstream.text}

        logger.info("Webhook relayed: destination=%s status=%d", destination, upstream.status_code)
        return {
            "success": upstream.is_success,
            "statusCode": upstream.status_code,
            "response": response_data,
        }

    return router
