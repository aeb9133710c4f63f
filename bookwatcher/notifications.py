"""Telegram delivery: Bot API client, broadcast fan-out and operator channel."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests

from .errors import RecipientUnreachable, TelegramAPIError

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

UNREACHABLE_DESCRIPTIONS = (
    "bot was blocked by the user",
    "user is deactivated",
    "chat not found",
    "bot was kicked",
    "bot is not a member",
    "have no rights to send a message",
)


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


class Dispatcher(Protocol):
    """Sends text messages to chat recipients."""

    def send(self, chat_id: str, message: str) -> None:
        ...

    def broadcast(self, recipients: Iterable[str], message: str) -> Dict[str, DeliveryResult]:
        ...


def _is_unreachable(status_code: int, description: str) -> bool:
    if status_code == 403:
        return True
    lowered = description.lower()
    return any(marker in lowered for marker in UNREACHABLE_DESCRIPTIONS)


@dataclass
class TelegramClient:
    """Minimal Telegram Bot API client over HTTPS."""

    token: str
    timeout: int = 10
    session: requests.Session = field(default_factory=requests.Session)

    def call(
        self,
        method: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        chat_id: Optional[str] = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result`` field."""
        url = TELEGRAM_API.format(token=self.token, method=method)
        response = self.session.post(
            url,
            json=payload or {},
            timeout=timeout or self.timeout,
        )
        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise TelegramAPIError(
                f"{method}: non-JSON response", response.status_code
            )

        if body.get("ok"):
            return body.get("result")

        description = str(body.get("description") or f"HTTP {response.status_code}")
        status_code = int(body.get("error_code") or response.status_code)
        if chat_id is not None and _is_unreachable(status_code, description):
            raise RecipientUnreachable(chat_id, description, status_code)
        raise TelegramAPIError(f"{method}: {description}", status_code)

    def get_me(self) -> Dict[str, Any]:
        return self.call("getMe")

    def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: Optional[str] = "Markdown",
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return self.call("sendMessage", payload, chat_id=chat_id)

    def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        # The HTTP timeout must outlast the long-poll window.
        return self.call("getUpdates", payload, timeout=timeout + self.timeout) or []


@dataclass
class TelegramDispatcher:
    """Fan-out sender whose per-recipient failures never affect other recipients."""

    client: TelegramClient

    def send(self, chat_id: str, message: str) -> None:
        self.client.send_message(chat_id, message)

    def broadcast(self, recipients: Iterable[str], message: str) -> Dict[str, DeliveryResult]:
        outcomes: Dict[str, DeliveryResult] = {}
        for chat_id in recipients:
            try:
                self.send(chat_id, message)
            except RecipientUnreachable as exc:
                logger.warning("Recipient %s unreachable: %s", chat_id, exc.description)
                outcomes[chat_id] = DeliveryResult.UNREACHABLE
            except (TelegramAPIError, requests.RequestException) as exc:
                logger.error("Failed to deliver message to %s: %s", chat_id, exc)
                outcomes[chat_id] = DeliveryResult.FAILED
            else:
                outcomes[chat_id] = DeliveryResult.DELIVERED
        return outcomes


@dataclass
class OperatorChannel:
    """Best-effort delivery of operational messages to configured admin chats."""

    dispatcher: Dispatcher
    chat_ids: List[str]

    def notify(self, message: str) -> bool:
        if not self.chat_ids:
            logger.warning("No operator chats configured, dropping message")
            return False
        outcomes = self.dispatcher.broadcast(self.chat_ids, message)
        return any(result is DeliveryResult.DELIVERED for result in outcomes.values())


__all__ = [
    "DeliveryResult",
    "Dispatcher",
    "OperatorChannel",
    "TelegramClient",
    "TelegramDispatcher",
]
