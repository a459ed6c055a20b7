"""
Web Push delivery for in-app reminder notifications.

Sends push notifications via pywebpush and prunes stale subscriptions.
Push is best-effort: the in-app notification row is the source of truth.
"""
import json
import logging

from pywebpush import webpush, WebPushException
from sqlalchemy.orm import Session

from crm_reminders.config import get_settings
from crm_reminders.infrastructure.db.models import PushSubscription

logger = logging.getLogger(__name__)


def _vapid_private_key(raw_key: str) -> str:
    """Accept the key as raw base64url or PEM (with real or escaped newlines)."""
    if "\\n" in raw_key:
        raw_key = raw_key.replace("\\n", "\n")
    if "BEGIN" in raw_key:
        lines = [
            line.strip() for line in raw_key.strip().splitlines()
            if line.strip() and not line.strip().startswith("-----")
        ]
        raw_key = "".join(lines)
    return raw_key


def send_web_push(db: Session, subscription: PushSubscription, payload: dict) -> bool:
    """
    Push one payload to one device.

    payload format:
        {"title": "...", "body": "...", "url": "/quotes/12", "priority": "high"}

    Returns True on success. Subscriptions answering 404/410 are deleted.
    """
    settings = get_settings()
    if not settings.VAPID_PRIVATE_KEY or not settings.VAPID_PUBLIC_KEY:
        logger.debug("VAPID keys not configured, skipping push")
        return False

    try:
        webpush(
            subscription_info={
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
            },
            data=json.dumps(payload, ensure_ascii=False),
            vapid_private_key=_vapid_private_key(settings.VAPID_PRIVATE_KEY),
            vapid_claims={"sub": settings.VAPID_MAILTO},
            timeout=10,
        )
        return True
    except WebPushException as e:
        status_code = e.response.status_code if e.response is not None else 0
        if status_code in (404, 410):
            logger.info("Push subscription gone (HTTP %d), removing: %s", status_code, subscription.endpoint[:60])
            db.query(PushSubscription).filter(PushSubscription.id == subscription.id).delete()
        else:
            logger.warning("WebPush error (HTTP %d): %s", status_code, e)
        return False


def send_push_to_user(db: Session, user_id: int, payload: dict) -> int:
    """Push to every device of a user. Returns the number of successful deliveries."""
    subs = db.query(PushSubscription).filter(PushSubscription.user_id == user_id).all()
    return sum(1 for sub in subs if send_web_push(db, sub, payload))
