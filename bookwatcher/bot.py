"""Inbound Telegram handling: subscription commands and alert acknowledgment."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from .alerts import AlertEngine
from .db import Database
from .errors import BookWatcherError, TelegramAPIError
from .notifications import Dispatcher, TelegramClient
from .runner import MonitorRunner
from .templates import escape_markdown, format_check_report, format_timestamp

logger = logging.getLogger(__name__)

POLL_RETRY_SECONDS = 5


def _in_thread(task: Callable[[], None]) -> None:
    threading.Thread(target=task, name="manual-check", daemon=True).start()


@dataclass
class IncomingMessage:
    chat_id: str
    text: str
    username: Optional[str] = None
    first_name: Optional[str] = None

    @classmethod
    def from_update(cls, update: Dict[str, Any]) -> Optional["IncomingMessage"]:
        message = update.get("message") or {}
        chat = message.get("chat") or {}
        if "id" not in chat:
            return None
        sender = message.get("from") or {}
        return cls(
            chat_id=str(chat["id"]),
            text=message.get("text") or "",
            username=sender.get("username"),
            first_name=sender.get("first_name"),
        )

    @property
    def command(self) -> Optional[str]:
        if not self.text.startswith("/"):
            return None
        head = self.text.split(maxsplit=1)[0][1:]
        return head.split("@", 1)[0].lower()


@dataclass
class TelegramBot:
    """Long-polls the Bot API and routes messages to commands or the alert engine."""

    client: TelegramClient
    dispatcher: Dispatcher
    database: Database
    engine: AlertEngine
    runner: MonitorRunner
    poll_timeout: int = 30
    run_in_background: Callable[[Callable[[], None]], None] = _in_thread
    offset: Optional[int] = None
    commands: Dict[str, Callable[[IncomingMessage], None]] = field(init=False)

    def __post_init__(self) -> None:
        self.commands = {
            "start": self.cmd_start,
            "subscribe": self.cmd_subscribe,
            "unsubscribe": self.cmd_unsubscribe,
            "status": self.cmd_status,
            "check": self.cmd_check,
            "chatid": self.cmd_chatid,
        }

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Telegram bot started polling for messages")
        while not stop_event.is_set():
            try:
                self.poll_once()
            except (TelegramAPIError, requests.RequestException) as exc:
                logger.warning("Polling failed: %s; retrying in %ds", exc, POLL_RETRY_SECONDS)
                stop_event.wait(POLL_RETRY_SECONDS)
        logger.info("Telegram bot stopped polling")

    def poll_once(self) -> int:
        updates = self.client.get_updates(offset=self.offset, timeout=self.poll_timeout)
        for update in updates:
            self.offset = int(update["update_id"]) + 1
            try:
                self.handle_update(update)
            except Exception:  # noqa: BLE001
                # One malformed update must not stop the polling loop.
                logger.exception("Failed to handle update %s", update.get("update_id"))
        return len(updates)

    def handle_update(self, update: Dict[str, Any]) -> None:
        message = IncomingMessage.from_update(update)
        if message is None:
            return
        handler = self.commands.get(message.command or "")
        if handler is not None:
            handler(message)
            return
        self.on_message(message)

    def on_message(self, message: IncomingMessage) -> None:
        if not self.database.is_subscriber(message.chat_id):
            return
        logger.info("Received message from subscriber %s", message.chat_id)
        self.engine.acknowledge(message.chat_id)

    def reply(self, chat_id: str, text: str) -> None:
        try:
            self.dispatcher.send(chat_id, text)
        except (TelegramAPIError, requests.RequestException) as exc:
            logger.error("Failed to reply to %s: %s", chat_id, exc)

    def cmd_chatid(self, message: IncomingMessage) -> None:
        logger.info("User %s requested their chat ID", message.chat_id)
        self.reply(
            message.chat_id,
            f"🆔 *Ваш Chat ID:* `{message.chat_id}`\n\n"
            f"👤 Имя: {escape_markdown(message.first_name or '')}\n"
            f"📝 Username: @{escape_markdown(message.username or 'unknown')}\n\n"
            "_Отправьте этот ID администратору для добавления в мониторинг_",
        )

    def cmd_start(self, message: IncomingMessage) -> None:
        subscribed = self.database.is_subscriber(message.chat_id)
        status = "✅ Вы подписаны на уведомления" if subscribed else "❌ Вы не подписаны"
        self.reply(
            message.chat_id,
            "🏠 *Монитор свободных квартир*\n\n"
            "Этот бот отслеживает появление свободных квартир.\n\n"
            f"{status}\n\n"
            "*Команды:*\n"
            "/subscribe - подписаться на уведомления\n"
            "/unsubscribe - отписаться от уведомлений\n"
            "/check - проверить квартиры сейчас\n"
            "/status - статус подписки\n"
            "/chatid - показать ваш Chat ID",
        )

    def cmd_subscribe(self, message: IncomingMessage) -> None:
        added = self.database.add_subscriber(
            message.chat_id, message.username, message.first_name
        )
        if not added:
            self.reply(message.chat_id, "ℹ️ Вы уже подписаны на уведомления.")
            return
        self.reply(
            message.chat_id,
            "✅ *Вы успешно подписались!*\n\n"
            "Теперь вы будете получать уведомления о свободных квартирах.\n\n"
            f"👥 Всего подписчиков: {self.database.subscriber_count()}",
        )

    def cmd_unsubscribe(self, message: IncomingMessage) -> None:
        if not self.database.remove_subscriber(message.chat_id):
            self.reply(message.chat_id, "ℹ️ Вы не были подписаны.")
            return
        self.reply(
            message.chat_id,
            "👋 *Вы отписались от уведомлений*\n\n"
            "Чтобы подписаться снова, используйте /subscribe",
        )

    def cmd_status(self, message: IncomingMessage) -> None:
        subscriber = self.database.get_subscriber(message.chat_id)
        if subscriber is not None and subscriber.is_active:
            since = format_timestamp(dt.datetime.fromisoformat(subscriber.subscribed_at))
            status = f"✅ Ваш статус: *Подписан* (с {since})"
        else:
            status = "❌ Ваш статус: *Не подписан*"
        self.reply(
            message.chat_id,
            "📊 *Статус подписки*\n\n"
            f"{status}\n"
            f"👥 Всего подписчиков: {self.database.subscriber_count()}\n"
            f"🏠 Свободных квартир сейчас: {self.database.count_available()}",
        )

    def cmd_check(self, message: IncomingMessage) -> None:
        if not self.database.is_subscriber(message.chat_id):
            self.reply(message.chat_id, "⚠️ Сначала подпишитесь на уведомления командой /subscribe")
            return
        logger.info("Manual check requested by %s", message.chat_id)
        self.reply(
            message.chat_id,
            "🔍 *Запускаю проверку квартир...*\n\n_Это может занять 1-2 минуты_",
        )
        self.run_in_background(lambda: self.manual_check(message.chat_id))

    def manual_check(self, chat_id: str) -> None:
        try:
            summary = self.runner.run(trigger="manual")
        except BookWatcherError:
            logger.exception("Manual check failed")
            self.reply(chat_id, "❌ Проверку не удалось завершить. Попробуйте позже.")
            return
        if summary is None:
            self.reply(chat_id, "⏳ Проверка уже выполняется, попробуйте через минуту.")
            return
        if not summary.results:
            self.reply(chat_id, "⚠️ Нет активных профилей для проверки")
            return
        for result in summary.results:
            self.reply(chat_id, format_check_report(result.scan))
        self.reply(chat_id, "✅ *Проверка завершена*")
