"""
Push notifications.

Delivery is fire-and-forget: a failed push is logged and never turns a
successful booking or payment into an error.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"


class Notifier(ABC):
    @abstractmethod
    async def send(
        self, token: Optional[str], title: str, body: str, data: dict
    ) -> None: ...


class LogNotifier(Notifier):
    async def send(self, token, title, body, data) -> None:
        logger.info("Notification %r: %s %s", title, body, data)


class FcmNotifier(Notifier):
    def __init__(
        self,
        server_key: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"key={server_key}"},
        )

    async def send(self, token, title, body, data) -> None:
        if not token:
            logger.debug("No device token; skipping %r", title)
            return
        response = await self._client.post(
            FCM_SEND_URL,
            json={
                "to": token,
                "notification": {"title": title, "body": body},
                "data": {k: str(v) for k, v in data.items()},
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


async def notify_quietly(
    notifier: Notifier, token: Optional[str], title: str, body: str, data: dict
) -> None:
    try:
        await notifier.send(token, title, body, data)
    except Exception:
        logger.exception("Notification %r failed", title)
