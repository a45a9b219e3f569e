"""
Signature engine shared by every provider adapter.

Each gateway signs a different canonical string with a different HMAC:

  VNPAY   sorted vnp_* params, empty values omitted, values form-urlencoded,
          HMAC-SHA512 with the merchant hash secret.
  MOMO    fixed alphabetical field list qualified with accessKey, absent
          fields rendered as "", raw values, HMAC-SHA256 with the secret key.
          Create requests and callbacks sign different field lists.
  STRIPE  "{timestamp}.{raw_body}", HMAC-SHA256 with the webhook secret.

Getting any of these one byte off does not break payment creation; it
silently breaks verification. Keep the canonicalizers byte-exact.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote_plus


class Algorithm(str, Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"


@dataclass(frozen=True)
class SigningScheme:
    """Canonicalization rule plus hash algorithm for one provider message."""

    name: str
    algorithm: Algorithm
    canonicalize: Callable[[Mapping[str, Any]], str]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ─── VNPAY ─────────────────────────────────────────────────────────────

VNPAY_UNSIGNED_KEYS = frozenset({"vnp_SecureHash", "vnp_SecureHashType"})


def canonicalize_vnpay(params: Mapping[str, Any]) -> str:
    items = sorted(
        (key, _text(value))
        for key, value in params.items()
        if key.startswith("vnp_") and key not in VNPAY_UNSIGNED_KEYS and _text(value) != ""
    )
    return "&".join(f"{key}={quote_plus(value)}" for key, value in items)


# ─── MOMO ──────────────────────────────────────────────────────────────

MOMO_CREATE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)

MOMO_CALLBACK_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)


def _momo_canonicalizer(fields: tuple[str, ...]) -> Callable[[Mapping[str, Any]], str]:
    def canonicalize(params: Mapping[str, Any]) -> str:
        return "&".join(f"{field}={_text(params.get(field))}" for field in fields)

    return canonicalize


# ─── STRIPE ────────────────────────────────────────────────────────────


def canonicalize_stripe(params: Mapping[str, Any]) -> str:
    return f"{_text(params.get('timestamp'))}.{_text(params.get('payload'))}"


def parse_stripe_signature_header(header: Optional[str]) -> tuple[Optional[str], list[str]]:
    """
    Split a Stripe-Signature header into (timestamp, [v1 signatures]).

    Unknown schemes (v0, future versions) are ignored.
    """
    timestamp = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


VNPAY_SCHEME = SigningScheme("vnpay", Algorithm.SHA512, canonicalize_vnpay)
MOMO_CREATE_SCHEME = SigningScheme("momo_create", Algorithm.SHA256, _momo_canonicalizer(MOMO_CREATE_FIELDS))
MOMO_CALLBACK_SCHEME = SigningScheme("momo_callback", Algorithm.SHA256, _momo_canonicalizer(MOMO_CALLBACK_FIELDS))
STRIPE_SCHEME = SigningScheme("stripe", Algorithm.SHA256, canonicalize_stripe)


def hmac_hex(message: str, secret: str, algorithm: Algorithm) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        getattr(hashlib, algorithm.value),
    ).hexdigest()


def sign(params: Mapping[str, Any], secret: str, scheme: SigningScheme) -> str:
    """Return the lowercase hex digest of params under the provider's scheme."""
    return hmac_hex(scheme.canonicalize(params), secret, scheme.algorithm)


def verify(params: Mapping[str, Any], provided: Any, secret: str, scheme: SigningScheme) -> bool:
    """
    Check a provider-supplied digest against our own computation.

    Comparison is constant-time and case-insensitive (VNPAY has been seen
    sending uppercase hex).
    """
    if not isinstance(provided, str) or not provided:
        return False
    expected = sign(params, secret, scheme)
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("utf-8"))
