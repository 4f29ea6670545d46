# app/utils/security.py
"""
Webhook verification helpers.

Provides:
 - verify_twilio_signature(url, params, signature, auth_token) -> bool
 - verify_shared_secret(provided, secret) -> bool

Twilio signs each callback with the account auth token (X-Twilio-Signature).
Deployments behind other carriers/proxies can use a shared secret header instead.
"""
import hmac
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: Optional[str], auth_token: str) -> bool:
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)


def verify_shared_secret(provided: Optional[str], secret: str) -> bool:
    """Constant-time compare of the X-Webhook-Secret header."""
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))
