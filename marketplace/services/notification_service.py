"""
Notification dispatcher: in-app notification feed plus push delivery.

Core behaviour:
- every notification is written to the ``notifications`` table (the bell feed)
- device tokens are collected from ``users.fcm_token`` / ``users.fcm_tokens``
  and de-duplicated
- when PUSH_GATEWAY_URL is set, a multicast payload is POSTed to the push relay
- failures are logged and never raised to the caller
"""

import json
import logging
import os
from datetime import datetime

import httpx
from fastapi import Depends

from marketplace.database import Database, get_database

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fire-and-forget notifications for buyers, store owners and couriers."""

    def __init__(self, db: Database, push_url: str | None = None):
        self.db = db
        self.push_url = push_url if push_url is not None else os.getenv("PUSH_GATEWAY_URL", "")

    def _store_notification(
        self, user_id: str, title: str, body: str, kind: str, order_id: str | None
    ) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        conn = self.db.connect()
        try:
            conn.execute(
                """INSERT INTO notifications
                   (user_id, title, body, type, order_id, read, created_at)
                   VALUES (?, ?, ?, ?, ?, 0, ?)""",
                (user_id, title, body, kind, order_id, now),
            )
            conn.commit()
        finally:
            conn.close()

    def _collect_tokens(self, user_id: str) -> list[str]:
        """Device tokens of a user (single token field or token list), unique."""
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT fcm_token, fcm_tokens FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()

        if not row:
            return []

        tokens: list[str] = []
        if row["fcm_token"]:
            tokens.append(row["fcm_token"])
        if row["fcm_tokens"]:
            try:
                extra = json.loads(row["fcm_tokens"])
            except ValueError:
                extra = []
            if isinstance(extra, list):
                tokens.extend(t for t in extra if isinstance(t, str) and t)

        return list(dict.fromkeys(tokens))

    def _send_push(
        self, tokens: list[str], title: str, body: str, link: str, order_id: str | None
    ) -> bool:
        payload = {
            "tokens": tokens,
            "notification": {"title": title, "body": body},
            "webpush": {"fcmOptions": {"link": link}},
            "data": {"url": link, "orderId": order_id or ""},
        }
        with httpx.Client(timeout=10.0) as client:
            resp = client.post(self.push_url, json=payload)
        if resp.status_code >= 400:
            logger.warning(
                "Push relay rejected notification (status=%d): %s",
                resp.status_code, resp.text[:200],
            )
            return False
        return True

    def notify(
        self,
        user_id: str | None,
        title: str,
        body: str,
        kind: str,
        order_id: str | None = None,
        link: str | None = None,
    ) -> bool:
        """
        Record and push a notification.

        Returns:
            True when the in-app notification was stored. Push failures do
            not change the result; no exception ever escapes.
        """
        if not user_id:
            return False

        try:
            self._store_notification(user_id, title, body, kind, order_id)
        except Exception as e:
            logger.warning("Failed to store notification (user=%s, type=%s): %s", user_id, kind, e)
            return False

        if not self.push_url:
            return True

        try:
            tokens = self._collect_tokens(user_id)
            if not tokens:
                logger.info("User %s has no registered devices, push skipped", user_id)
                return True
            if self._send_push(tokens, title, body, link or "/orders", order_id):
                logger.info("Push sent to user %s (%d devices)", user_id, len(tokens))
        except Exception as e:
            logger.warning("Push delivery failed (user=%s, type=%s): %s", user_id, kind, e)

        return True


def get_notifier(db: Database = Depends(get_database)) -> NotificationDispatcher:
    """FastAPI dependency: dispatcher bound to the application database."""
    return NotificationDispatcher(db)
