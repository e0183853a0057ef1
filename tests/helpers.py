"""Request builders shared by the HTTP tests"""
import hashlib
import hmac
import json
import time
import uuid

from tokenledger.config import get_settings
from tokenledger.services.auth_service import create_jwt
from tokenledger.services.identity_service import sign_payload


def auth_headers(user_id: str, **claims) -> dict:
    claims.setdefault("name", "Test User")
    return {"Authorization": f"Bearer {create_jwt(user_id, **claims)}"}


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> str:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


def stripe_headers(payload: str, secret: str | None = None) -> dict:
    """Stripe-Signature header: v1 = HMAC-SHA256 of "{t}.{payload}"."""
    secret = secret or get_settings().stripe_webhook_secret
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


def identity_event(event_type: str, subject_id: str) -> bytes:
    return json.dumps({"type": event_type, "object": "event", "data": {"id": subject_id}}).encode()


def svix_headers(payload: bytes, msg_id: str | None = None, timestamp: int | None = None) -> dict:
    msg_id = msg_id or f"msg_{uuid.uuid4().hex[:16]}"
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = sign_payload(get_settings().identity_webhook_secret, msg_id, ts, payload)
    return {
        "svix-id": msg_id,
        "svix-timestamp": ts,
        "svix-signature": f"v1,{signature}",
        "content-type": "application/json",
    }


def stripe_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    price: str = "price_premium",
    status: str = "active",
    period_end: int = 1_900_000_000,
) -> dict:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": price}}]},
    }


def stripe_customer(customer_id: str = "cus_123", user_id: str | None = "U2", deleted: bool = False) -> dict:
    customer = {"id": customer_id, "object": "customer", "metadata": {}}
    if user_id:
        customer["metadata"]["userId"] = user_id
    if deleted:
        customer["deleted"] = True
    return customer
