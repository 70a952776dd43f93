"""
Concrete dispatch clients.

Add a backend here, then register it in factory.py.

Registered backends:
  log     : LoggingDispatchClient   (logs the payload, mints a WH- reference)
  webhook : WebhookDispatchClient   (JSON POST to the warehouse webhook)
"""

import logging
import secrets

import requests
from django.conf import settings

from ..exceptions import DispatchFailure
from .base import BaseDispatchClient
from .types import DispatchReceipt

logger = logging.getLogger(__name__)


# ── LoggingDispatchClient ─────────────────────────────────────────────────
#
# For local development: there is no warehouse to call, so the payload is
# logged and a reference is minted the way the warehouse would.

class LoggingDispatchClient(BaseDispatchClient):

    def notify(self, payload: dict, idempotency_key: str, timeout: float) -> DispatchReceipt:
        dispatch_ref = f"WH-{secrets.token_hex(4).upper()}"
        logger.info("[Dispatch] order %s handed to warehouse log as %s: %s",
                    idempotency_key, dispatch_ref, payload)
        return DispatchReceipt(status="dispatched", dispatch_ref=dispatch_ref)


# ── WebhookDispatchClient ─────────────────────────────────────────────────
#
# Uses requests.
# Settings: PHARMACY_DISPATCH_WEBHOOK_URL
# Expected answer: 2xx JSON, {"status": "dispatched", "dispatch_ref": "..."}
# (a missing dispatch_ref is tolerated; the ack receiver fills it in later)

class WebhookDispatchClient(BaseDispatchClient):

    def __init__(self, url: str | None = None, session: requests.Session | None = None):
        self.url = url or getattr(settings, "PHARMACY_DISPATCH_WEBHOOK_URL", "")
        self.session = session or requests.Session()

    def notify(self, payload: dict, idempotency_key: str, timeout: float) -> DispatchReceipt:
        if not self.url:
            raise DispatchFailure("PHARMACY_DISPATCH_WEBHOOK_URL is not set")

        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
                timeout=timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise DispatchFailure(
                f"Warehouse webhook failed: {exc}",
                detail={"order_id": idempotency_key},
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        return DispatchReceipt(
            status=str(body.get("status") or body.get("msg") or "dispatched"),
            dispatch_ref=str(body.get("dispatch_ref") or ""),
        )
