# engine/classify.py
# Map provider failure text/codes onto operator-facing categories.
#
# Exports:
#   classify_failure(message, code=None, kind=None) -> Classification
#   display_message(category) -> str

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

TEMPLATE_NOT_APPROVED = "template_not_approved"
PARAMETER_MISMATCH = "parameter_mismatch"
AUTH_FAILURE = "auth_failure"
RECIPIENT_UNREACHABLE = "recipient_unreachable"
RATE_LIMITED = "rate_limited"
NETWORK = "network"
RECIPIENT_NOT_FOUND = "recipient_not_found"
PROVIDER_REJECTED = "provider_rejected"

DISPLAY = {
    TEMPLATE_NOT_APPROVED: "Template is not approved, paused, or missing for this language.",
    PARAMETER_MISMATCH: "Template parameters do not match what the approved template expects.",
    AUTH_FAILURE: "Access token is invalid or expired. Renew META_ACCESS_TOKEN.",
    RECIPIENT_UNREACHABLE: "Recipient cannot receive WhatsApp messages.",
    RATE_LIMITED: "Sending too fast for this number. Lower the pace and retry later.",
    NETWORK: "Network problem talking to the provider.",
    RECIPIENT_NOT_FOUND: "Recipient is not present in any selected shard.",
    PROVIDER_REJECTED: "Provider rejected the message.",
}

# Graph API error codes
_CODES = {
    132000: PARAMETER_MISMATCH,     # number of parameters does not match
    132001: TEMPLATE_NOT_APPROVED,  # template name does not exist in the translation
    132005: PARAMETER_MISMATCH,     # translated text too long
    132007: TEMPLATE_NOT_APPROVED,  # format character policy violated
    132012: PARAMETER_MISMATCH,     # parameter format mismatch
    132015: TEMPLATE_NOT_APPROVED,  # template paused
    132016: TEMPLATE_NOT_APPROVED,  # template disabled
    131008: PARAMETER_MISMATCH,     # required parameter missing
    131026: RECIPIENT_UNREACHABLE,  # message undeliverable
    131030: RECIPIENT_UNREACHABLE,  # recipient not in allowed list
    130429: RATE_LIMITED,
    131048: RATE_LIMITED,
    131056: RATE_LIMITED,
    190: AUTH_FAILURE,
    0: AUTH_FAILURE,
}

# Keyword groups (matched on lowercased text)
TEMPLATE_KEYWORDS = [
    "template name does not exist", "template does not exist", "not approved",
    "template is paused", "template is disabled",
    "hello world templates can only be sent from the public test numbers",
]
PARAM_KEYWORDS = [
    "number of parameters does not match", "parameter", "localizable_params",
]
AUTH_KEYWORDS = [
    "access token", "session has expired", "oauth", "invalid token", "error validating",
]
UNREACHABLE_KEYWORDS = [
    "undeliverable", "not a valid whatsapp", "recipient phone number not in allowed list",
]
RATE_KEYWORDS = ["rate limit", "too many", "throughput"]
NETWORK_KEYWORDS = ["timed out", "timeout", "connection", "max retries", "name or service not known"]

CODE_RX = re.compile(r"\(#(\d+)\)")


@dataclass(frozen=True)
class Classification:
    category: str
    display: str


def display_message(category: str) -> str:
    return DISPLAY.get(category, DISPLAY[PROVIDER_REJECTED])


def _by_kind(kind: Optional[str]) -> Optional[str]:
    if kind == "AuthError":
        return AUTH_FAILURE
    if kind == "NetworkError":
        return NETWORK
    if kind == "RecipientNotFound":
        return RECIPIENT_NOT_FOUND
    return None


def _category(message: str, code: Optional[int], kind: Optional[str]) -> str:
    if code is None:
        m = CODE_RX.search(message or "")
        if m:
            code = int(m.group(1))
    if code is not None and code in _CODES:
        return _CODES[code]

    by_kind = _by_kind(kind)
    if by_kind:
        return by_kind

    low = (message or "").lower()
    if any(k in low for k in TEMPLATE_KEYWORDS):
        return TEMPLATE_NOT_APPROVED
    if any(k in low for k in AUTH_KEYWORDS):
        return AUTH_FAILURE
    if any(k in low for k in UNREACHABLE_KEYWORDS):
        return RECIPIENT_UNREACHABLE
    if any(k in low for k in RATE_KEYWORDS):
        return RATE_LIMITED
    if any(k in low for k in PARAM_KEYWORDS):
        return PARAMETER_MISMATCH
    if any(k in low for k in NETWORK_KEYWORDS):
        return NETWORK
    return PROVIDER_REJECTED


def classify_failure(message: str, code: Optional[int] = None, kind: Optional[str] = None) -> Classification:
    """
    Best-effort user-facing category for a failed send.

    Explicit provider codes win, then the exception kind, then keyword
    heuristics; anything unrecognized is provider_rejected.
    """
    category = _category(message, code, kind)
    return Classification(category=category, display=display_message(category))
