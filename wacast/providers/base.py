"""
Provider abstraction layer: base interfaces.

This module defines:
- SendResult: normalized result of a provider send attempt.
- BaseMessageProvider: interface all messaging providers must implement.

Providers never raise for API-level failures; they return SendResult with
ok=False plus an error_kind the send loop maps onto its exception types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

# error_kind values
KIND_REJECTED = "ProviderRejected"
KIND_AUTH = "AuthError"
KIND_NETWORK = "NetworkError"


@dataclass
class SendResult:
    """
    Normalized result from a provider send() call.

    Fields:
      ok:                  True if the provider accepted the message.
      provider_name:       Short identifier for the provider (e.g. "whatsapp_cloud").
      provider_message_id: Provider-level message id (if available).
      error:               Provider error text, verbatim (optional).
      error_kind:          ProviderRejected | AuthError | NetworkError on failure.
      error_code:          Provider numeric error code if one was returned.
      extra:               Any additional provider-specific metadata.
    """

    ok: bool
    provider_name: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_code: Optional[int] = None
    extra: Optional[Dict[str, Any]] = None


class BaseMessageProvider:
    """
    Base interface for template-message providers.

    All concrete providers must implement .send() with this signature and
    return a SendResult object.
    """

    name: str = "base"

    def check_config(self) -> None:
        """Raise ConfigError if credentials are missing. Called before a live campaign starts."""
        return None

    def send(
        self,
        *,
        to: str,
        template_name: str,
        language: str,
        components: Optional[List[Dict[str, Any]]] = None,
        live: bool = True,
    ) -> SendResult:
        """
        Send one template message.

        Arguments:
          to:            Recipient phone number (recipient id).
          template_name: Approved template name.
          language:      Template language code (e.g. "es").
          components:    Header/body/button parameter components, if any.
          live:          If False, *must not* contact the provider, but
                         should still return SendResult(ok=True, ...).
        """
        raise NotImplementedError("BaseMessageProvider.send() must be implemented by subclasses")
