from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from ..errors import WebhookConfigurationError, WebhookSignatureError


logger = logging.getLogger(__name__)


def construct_event(payload: bytes | str, sig_header: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """
    Verify a Stripe webhook signature and return the event as a plain dict.
    """
    if not sig_header:
        raise WebhookSignatureError("Stripe-Signature header is missing")
    if not secret:
        raise WebhookConfigurationError("Stripe webhook secret is not configured")

    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise WebhookSignatureError("Stripe webhook signature verification failed") from exc
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise WebhookSignatureError("Malformed Stripe webhook payload") from exc

    return json.loads(payload)
