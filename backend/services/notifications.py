"""
Notifications "best effort" (robot DingTalk).

Appelées APRÈS le commit de la transaction qui a créé les données :
un échec est journalisé puis ignoré, jamais remonté à l'appelant.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Protocol
from urllib.parse import quote_plus

import requests

from backend.app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchSummary:
    need_num: str
    country: str
    marketplace: str
    shipping_method: str
    created_by: str
    deadline: date | None = None
    lines: tuple[tuple[str, int], ...] = field(default_factory=tuple)

    def render(self) -> str:
        sku_list = "\n".join(f"{sku} x {qty}" for sku, qty in self.lines)
        deadline = self.deadline.isoformat() if self.deadline else "-"
        return (
            "New warehouse demand\n\n"
            f"Need number: {self.need_num}\n"
            f"Deadline: {deadline}\n"
            f"Country: {self.country}\n"
            f"Shipping method: {self.shipping_method}\n"
            f"Marketplace: {self.marketplace}\n"
            f"SKUs ({len(self.lines)}):\n{sku_list}\n\n"
            f"Operator: {self.created_by}"
        )


class Notifier(Protocol):
    def send_batch_summary(self, summary: BatchSummary) -> bool: ...


class NotificationError(Exception):
    pass


class NullNotifier:
    def send_batch_summary(self, summary: BatchSummary) -> bool:
        logger.info("no notification webhook configured, skipping need_num=%s", summary.need_num)
        return False


class DingTalkNotifier:
    def __init__(
        self,
        webhook: str,
        *,
        secret: str | None = None,
        at_mobiles: list[str] | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.webhook = webhook
        self.secret = secret
        self.at_mobiles = at_mobiles or []
        self.timeout = timeout
        self.session = session or requests.Session()

    def signed_url(self, timestamp_ms: int | None = None) -> str:
        if not self.secret:
            return self.webhook
        ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        string_to_sign = f"{ts}\n{self.secret}"
        digest = hmac.new(self.secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha256).digest()
        sign = quote_plus(base64.b64encode(digest))
        sep = "&" if "?" in self.webhook else "?"
        return f"{self.webhook}{sep}timestamp={ts}&sign={sign}"

    def send_batch_summary(self, summary: BatchSummary) -> bool:
        payload = {
            "msgtype": "text",
            "text": {"content": summary.render()},
            "at": {"atMobiles": self.at_mobiles, "isAtAll": False},
        }
        resp = self.session.post(self.signed_url(), json=payload, timeout=self.timeout)
        resp.raise_for_status()
        body = resp.json()
        # DingTalk répond 200 même en cas d'erreur applicative
        if body.get("errcode", 0) != 0:
            raise NotificationError(f"dingtalk errcode={body.get('errcode')} errmsg={body.get('errmsg')}")
        logger.info("notification sent for need_num=%s", summary.need_num)
        return True


def get_notifier() -> Notifier:
    settings = get_settings()
    if not settings.DINGTALK_WEBHOOK:
        return NullNotifier()
    return DingTalkNotifier(
        settings.DINGTALK_WEBHOOK,
        secret=settings.DINGTALK_SECRET,
        at_mobiles=settings.at_mobiles,
        timeout=settings.NOTIFY_TIMEOUT_SECONDS,
    )


def deliver(notifier: Notifier, summary: BatchSummary) -> bool:
    """Envoi synchrone avalant toute erreur (à exécuter hors transaction)."""
    try:
        return bool(notifier.send_batch_summary(summary))
    except Exception as exc:
        logger.warning("notification failed for need_num=%s: %s", summary.need_num, exc)
        return False


# Planificateur : appelé une fois le commit fait (BackgroundTasks.add_task côté API)
Dispatch = Callable[[BatchSummary], None]


def immediate_dispatch(notifier: Notifier) -> Dispatch:
    def _dispatch(summary: BatchSummary) -> None:
        deliver(notifier, summary)

    return _dispatch
