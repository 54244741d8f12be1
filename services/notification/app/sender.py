"""
Notification Service — メール送信

送信は取り消せない副作用なので、ゲートウェイには必ず
Idempotency-Key を付ける。再配送で同じキーが再送されても
ゲートウェイ側で 1 通にまとめられる。
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """ゲートウェイが受け付けなかった (メッセージは再配送される)"""


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str


class EmailSender(Protocol):
    async def send(self, message: EmailMessage, idempotency_key: str) -> None: ...


class HttpEmailSender:
    """POST {base_url}/messages"""

    def __init__(
        self,
        base_url: str,
        sender_address: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.sender_address = sender_address
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def send(self, message: EmailMessage, idempotency_key: str) -> None:
        try:
            response = await self._client.post(
                "/messages",
                json={
                    "from": self.sender_address,
                    "to": message.to,
                    "subject": message.subject,
                    "text": message.text,
                    "html": message.html,
                },
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TransportError as e:
            raise EmailDeliveryError(f"Email gateway unreachable: {e}") from e
        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"Email gateway rejected {idempotency_key}: HTTP {response.status_code}"
            )
        logger.info("Email %s sent to %s", idempotency_key, message.to)

    async def aclose(self) -> None:
        await self._client.aclose()


class LogEmailSender:
    """ゲートウェイ未設定時 (開発用): 内容をログに出すだけ"""

    async def send(self, message: EmailMessage, idempotency_key: str) -> None:
        logger.info(
            "[email] %s -> %s: %s", idempotency_key, message.to, message.subject
        )

    async def aclose(self) -> None:
        pass
