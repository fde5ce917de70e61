"""Cloudflare Turnstile CAPTCHA verification."""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


@dataclass
class TurnstileResult:
    ok: bool
    reason: Optional[str] = None


async def verify_turnstile(token: Optional[str], remote_ip: Optional[str] = None) -> TurnstileResult:
    """Verify a Turnstile token.

    Without a configured secret the check is skipped outside production, so
    local development works without a Cloudflare site.
    """
    settings = get_settings()
    secret = settings.turnstile_secret_key

    if not secret:
        if settings.is_production:
            logger.error("[Turnstile] TURNSTILE_SECRET_KEY not set in production")
            return TurnstileResult(ok=False, reason="not_configured")
        return TurnstileResult(ok=True, reason="dev_bypass")

    if not token:
        return TurnstileResult(ok=False, reason="missing_token")

    data = {"secret": secret, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(SITEVERIFY_URL, data=data)
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("[Turnstile] Verification request failed: %s", e)
        return TurnstileResult(ok=False, reason="verify_unavailable")

    if payload.get("success"):
        return TurnstileResult(ok=True)

    codes = payload.get("error-codes") or []
    return TurnstileResult(ok=False, reason=",".join(codes) or "rejected")
