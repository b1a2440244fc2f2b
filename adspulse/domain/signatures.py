from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum

from adspulse.config import settings
from adspulse.observability import incr_metric, log_event


class SignatureScheme(str, Enum):
    BASE64_HMAC_SHA256 = "base64-hmac-sha256"
    HEX_HMAC_SHA256 = "hex-hmac-sha256"
    SHA256_PREFIXED_HEX = "sha256-prefixed-hex"


@dataclass(frozen=True)
class ProviderSignature:
    provider: str
    scheme: SignatureScheme
    header: str
    secret_setting: str


PROVIDER_SIGNATURES: dict[str, ProviderSignature] = {
    "shopify": ProviderSignature("shopify", SignatureScheme.BASE64_HMAC_SHA256, "x-shopify-hmac-sha256", "webhook_secret_shopify"),
    "meta": ProviderSignature("meta", SignatureScheme.SHA256_PREFIXED_HEX, "x-hub-signature-256", "webhook_secret_meta"),
    "google": ProviderSignature("google", SignatureScheme.SHA256_PREFIXED_HEX, "x-goog-signature", "webhook_secret_google"),
    "hubspot": ProviderSignature("hubspot", SignatureScheme.HEX_HMAC_SHA256, "x-hubspot-signature", "webhook_secret_hubspot"),
    "salesforce": ProviderSignature("salesforce", SignatureScheme.HEX_HMAC_SHA256, "x-salesforce-signature", "webhook_secret_salesforce"),
}

_SHA256_PREFIX = re.compile(r"^sha256=", re.IGNORECASE)


@dataclass(frozen=True)
class SignatureVerification:
    verified: bool
    scheme: SignatureScheme


def provider_signature(provider: str) -> ProviderSignature:
    try:
        return PROVIDER_SIGNATURES[provider]
    except KeyError:
        raise ValueError(f"unknown webhook provider: {provider}") from None


def resolve_webhook_secret(provider: str) -> str | None:
    config = provider_signature(provider)
    secret = getattr(settings, config.secret_setting, None)
    if not secret or not str(secret).strip():
        return None
    return str(secret).strip()


def _digest(raw_body: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()


def compute_signature(provider: str, raw_body: bytes, secret: str) -> str:
    """Header value a provider would send for this body."""
    scheme = provider_signature(provider).scheme
    digest = _digest(raw_body, secret)
    if scheme is SignatureScheme.BASE64_HMAC_SHA256:
        return base64.b64encode(digest).decode("ascii")
    if scheme is SignatureScheme.SHA256_PREFIXED_HEX:
        return f"sha256={digest.hex()}"
    return digest.hex()


def normalize_signature(signature: str, scheme: SignatureScheme) -> str:
    if scheme is SignatureScheme.SHA256_PREFIXED_HEX:
        return _SHA256_PREFIX.sub("", signature.strip()).strip().lower()
    if scheme is SignatureScheme.HEX_HMAC_SHA256:
        return signature.strip().lower()
    return signature.strip()


def verify_signature(
    provider: str,
    raw_body: bytes,
    signature: str,
    secret: str | None = None,
) -> SignatureVerification:
    """Check a webhook signature in the provider's scheme.

    Mismatches are reported, not raised. A provider without a configured
    secret never verifies.
    """
    config = provider_signature(provider)
    resolved_secret = secret if secret is not None else resolve_webhook_secret(provider)
    if not resolved_secret:
        incr_metric("webhook.signature.secret_missing", provider=provider)
        log_event(
            "webhook_secret_missing",
            level=logging.WARNING,
            provider=provider,
            secret_setting=config.secret_setting.upper(),
        )
        return SignatureVerification(verified=False, scheme=config.scheme)

    expected = normalize_signature(compute_signature(provider, raw_body, resolved_secret), config.scheme)
    provided = normalize_signature(signature or "", config.scheme)
    verified = hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
    return SignatureVerification(verified=verified, scheme=config.scheme)
