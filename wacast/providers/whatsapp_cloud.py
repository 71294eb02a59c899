"""
WhatsApp Cloud API provider (whatsapp_cloud).

Posts template messages to the Meta Graph API:

  POST https://graph.facebook.com/{version}/{phone_number_id}/messages
  Authorization: Bearer {META_ACCESS_TOKEN}

No retries here: a failed attempt is recorded as failed and the campaign
moves on.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import requests

from ..errors import ConfigError
from .base import KIND_AUTH, KIND_NETWORK, KIND_REJECTED, BaseMessageProvider, SendResult

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = os.getenv("META_GRAPH_BASE_URL", "https://graph.facebook.com")
GRAPH_VERSION = os.getenv("META_GRAPH_VERSION", "v17.0")
REQUEST_TIMEOUT = float(os.getenv("META_REQUEST_TIMEOUT", "30"))

# Graph error codes that mean the token/app is unusable.
_AUTH_CODES = {0, 10, 102, 190, 200}


def _error_kind(status_code: int, code: Optional[int], err_type: str) -> str:
    if status_code in (401, 403) or code in _AUTH_CODES or (err_type == "OAuthException" and code is None):
        return KIND_AUTH
    if status_code >= 500:
        return KIND_NETWORK
    return KIND_REJECTED


class WhatsAppCloudProvider(BaseMessageProvider):
    name = "whatsapp_cloud"

    def __init__(
        self,
        access_token: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        *,
        graph_version: str = GRAPH_VERSION,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.access_token = access_token if access_token is not None else os.getenv("META_ACCESS_TOKEN")
        self.phone_number_id = phone_number_id if phone_number_id is not None else os.getenv("FROM_PHONE_NUMBER_ID")
        self.graph_version = graph_version
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.graph_version}/{self.phone_number_id}/messages"

    def check_config(self) -> None:
        missing = []
        if not self.access_token:
            missing.append("META_ACCESS_TOKEN")
        if not self.phone_number_id:
            missing.append("FROM_PHONE_NUMBER_ID")
        if missing:
            raise ConfigError("WhatsApp Cloud API not configured: missing " + ", ".join(missing))

    @staticmethod
    def build_payload(to: str, template_name: str, language: str, components=None) -> Dict[str, Any]:
        template: Dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if components:
            template["components"] = components
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "template",
            "template": template,
        }

    def send(
        self,
        *,
        to: str,
        template_name: str,
        language: str,
        components: Optional[List[Dict[str, Any]]] = None,
        live: bool = True,
    ) -> SendResult:
        payload = self.build_payload(to, template_name, language, components)

        if not live:
            logger.info("[DRY RUN] Would send template %s (%s) to %s", template_name, language, to)
            return SendResult(ok=True, provider_name=self.name, extra={"dry_run": True})

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.http.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            return SendResult(ok=False, provider_name=self.name, error=str(e), error_kind=KIND_NETWORK)

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if 200 <= resp.status_code < 300:
            messages = data.get("messages") or []
            message_id = messages[0].get("id") if messages else None
            return SendResult(ok=True, provider_name=self.name, provider_message_id=message_id)

        err = data.get("error") or {}
        message = err.get("message") or (resp.text or "")[:500] or f"HTTP {resp.status_code}"
        code = err.get("code")
        kind = _error_kind(resp.status_code, code, err.get("type") or "")
        return SendResult(
            ok=False,
            provider_name=self.name,
            error=message,
            error_kind=kind,
            error_code=code,
            extra={"status_code": resp.status_code, "error_data": err.get("error_data")},
        )
