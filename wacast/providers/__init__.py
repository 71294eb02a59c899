"""
Provider abstraction entrypoint.

- whatsapp_cloud (Meta Graph API template messages) is the default provider.
- dispatch_safely() turns a failed SendResult into the matching DispatchError
  so the send loop can classify it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import AuthError, DispatchError, NetworkError, ProviderRejected
from .base import BaseMessageProvider, SendResult  # re-export
from .whatsapp_cloud import WhatsAppCloudProvider

_PROVIDER_FACTORIES = {
    "whatsapp_cloud": WhatsAppCloudProvider,
    # Alias used by older config files
    "meta": WhatsAppCloudProvider,
}

DEFAULT_PROVIDER_TYPE = "whatsapp_cloud"

_ERRORS_BY_KIND = {
    AuthError.kind: AuthError,
    NetworkError.kind: NetworkError,
    ProviderRejected.kind: ProviderRejected,
}


def get_provider(provider_type: Optional[str] = None) -> BaseMessageProvider:
    """
    Build a provider from a provider_type string.

    Unknown provider types fall back to DEFAULT_PROVIDER_TYPE.
    """
    key = (provider_type or DEFAULT_PROVIDER_TYPE).strip().lower()
    factory = _PROVIDER_FACTORIES.get(key, WhatsAppCloudProvider)
    return factory()


def dispatch_safely(
    provider: BaseMessageProvider,
    *,
    to: str,
    template_name: str,
    language: str,
    components: Optional[List[Dict[str, Any]]] = None,
    live: bool = True,
) -> Optional[str]:
    """
    Send via `provider`; return the provider message id on success.

    Raises the DispatchError subclass matching result.error_kind otherwise.
    """
    result = provider.send(
        to=to,
        template_name=template_name,
        language=language,
        components=components,
        live=live,
    )
    if result.ok:
        return result.provider_message_id

    exc_cls = _ERRORS_BY_KIND.get(result.error_kind or "", ProviderRejected)
    status = (result.extra or {}).get("status_code")
    raise exc_cls(result.error or f"{provider.name} send failed", code=result.error_code, status_code=status)


__all__ = [
    "BaseMessageProvider",
    "DEFAULT_PROVIDER_TYPE",
    "DispatchError",
    "SendResult",
    "WhatsAppCloudProvider",
    "dispatch_safely",
    "get_provider",
]
