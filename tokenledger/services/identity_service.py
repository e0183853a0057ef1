"""Identity-provider webhooks — Svix signature check and user provisioning."""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import get_settings
from tokenledger.constants import (
    IDENTITY_USER_CREATED,
    IDENTITY_USER_DELETED,
    IDENTITY_USER_UPDATED,
    SVIX_SECRET_PREFIX,
    SVIX_SIGNATURE_VERSION,
    WEBHOOK_IGNORED,
    WEBHOOK_PROCESSED,
)
from tokenledger.errors import InvalidSignature
from tokenledger.services.ledger_service import provision

logger = logging.getLogger(__name__)


def _signing_key(secret: str) -> bytes:
    if secret.startswith(SVIX_SECRET_PREFIX):
        secret = secret[len(SVIX_SECRET_PREFIX):]
    try:
        return base64.b64decode(secret)
    except (binascii.Error, ValueError) as e:
        raise InvalidSignature("Webhook secret is malformed") from e


def sign_payload(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    """Base64 HMAC-SHA256 over ``{id}.{timestamp}.{body}``."""
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    digest = hmac.new(_signing_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(
    payload: bytes,
    msg_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    now: float | None = None,
) -> dict:
    """Check the Svix headers and return the parsed event body.

    The signature header may carry several space-separated ``v1,<sig>``
    entries (secret rotation); any one matching is enough.
    """
    settings = get_settings()
    if not settings.identity_webhook_secret:
        logger.error("Identity webhook rejected: IDENTITY_WEBHOOK_SECRET is not configured")
        raise InvalidSignature("Webhook secret not configured")
    if not msg_id or not timestamp or not signature_header:
        logger.warning("Identity webhook rejected: missing svix headers")
        raise InvalidSignature("Missing svix headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise InvalidSignature("Invalid timestamp")
    now = time.time() if now is None else now
    if abs(now - sent_at) > settings.identity_webhook_tolerance:
        logger.warning("Identity webhook %s rejected: timestamp outside tolerance", msg_id)
        raise InvalidSignature("Timestamp outside tolerance")

    expected = sign_payload(settings.identity_webhook_secret, msg_id, timestamp, payload)
    for entry in signature_header.split(" "):
        version, _, candidate = entry.partition(",")
        if version == SVIX_SIGNATURE_VERSION and hmac.compare_digest(candidate, expected):
            break
    else:
        logger.warning("Identity webhook %s rejected: signature mismatch", msg_id)
        raise InvalidSignature()

    try:
        body = json.loads(payload)
    except ValueError:
        raise InvalidSignature("Payload is not valid JSON")
    if not isinstance(body, dict):
        raise InvalidSignature("Payload is not a JSON object")
    return body


async def process_identity_event(db: AsyncSession, evt: dict) -> str:
    """Provision tokens for new users; other lifecycle events are no-ops for now."""
    event_type = evt.get("type")
    subject_id = (evt.get("data") or {}).get("id")
    logger.info("Identity webhook: %s for %s", event_type, subject_id)

    if event_type == IDENTITY_USER_CREATED:
        if not subject_id:
            logger.error("Identity user.created event without a subject id")
            return WEBHOOK_IGNORED
        _, created = await provision(db, subject_id)
        if not created:
            logger.info("User %s already had a subscription record", subject_id)
        return WEBHOOK_PROCESSED

    if event_type in (IDENTITY_USER_UPDATED, IDENTITY_USER_DELETED):
        # No ledger effect yet; subscriptions are removed by Stripe cancellation
        return WEBHOOK_IGNORED

    logger.info("Unhandled identity event type: %s", event_type)
    return WEBHOOK_IGNORED
