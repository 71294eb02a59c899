"""
wacast.errors

Exception types shared across the send loop, the recorder and analytics.

Per-recipient failures (resolution + dispatch) never abort a campaign; they
are caught by the send loop and stored on a failed SentRecord. Config errors
are raised before anything is sent.
"""

from __future__ import annotations

from typing import Optional


class WacastError(Exception):
    """Base class for everything raised by this package."""


class ConfigError(WacastError):
    """Missing or invalid configuration (credentials, economics, templates, shards)."""


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ResolutionError(WacastError):
    pass


class RecipientNotFound(ResolutionError):
    def __init__(self, recipient_id: str, shard_keys=None):
        self.recipient_id = recipient_id
        self.shard_keys = list(shard_keys or [])
        super().__init__(
            f"Recipient {recipient_id} not found in shards {', '.join(self.shard_keys) or '(none)'}"
        )


class ShardUnavailable(ResolutionError):
    def __init__(self, shard_key: str, reason: str = ""):
        self.shard_key = shard_key
        self.reason = reason
        super().__init__(f"Shard {shard_key} unavailable: {reason}" if reason else f"Shard {shard_key} unavailable")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class DispatchError(WacastError):
    """
    A send attempt failed.

    `message` is the provider's text, kept verbatim so operators can see
    exactly what the API said. `code` is the provider error code if any.
    """

    kind = "DispatchError"

    def __init__(self, message: str, *, code: Optional[int] = None, status_code: Optional[int] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class ProviderRejected(DispatchError):
    kind = "ProviderRejected"


class AuthError(DispatchError):
    kind = "AuthError"


class NetworkError(DispatchError):
    kind = "NetworkError"


# ---------------------------------------------------------------------------
# Persistence lookups
# ---------------------------------------------------------------------------


class CampaignNotFound(WacastError):
    pass


class SnapshotNotFound(WacastError):
    pass


class SnapshotExists(WacastError):
    pass
