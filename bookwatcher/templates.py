"""Message texts sent to subscribers and operators (Telegram Markdown)."""

from __future__ import annotations

import datetime as dt
import re
from typing import List, Optional

from .models import MonitorStats, ScanResult

# Moscow has observed a fixed UTC+3 offset since 2014.
MOSCOW_TZ = dt.timezone(dt.timedelta(hours=3), "MSK")
SEPARATOR = "─" * 20
MAX_LABELS_LISTED = 10

# Characters that open an entity in Telegram legacy Markdown.
MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


def escape_markdown(text: str) -> str:
    """Escape free text for a legacy Markdown message."""
    return MARKDOWN_SPECIAL.sub(r"\\\1", text)


def format_timestamp(moment: Optional[dt.datetime] = None) -> str:
    moment = moment or dt.datetime.now(dt.timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(MOSCOW_TZ).strftime("%d.%m.%Y %H:%M:%S")


def _site_link(link: Optional[str]) -> List[str]:
    if not link:
        return []
    return [f"[Открыть сайт]({link})"]


def format_available_alert(
    profile_name: str,
    scan: ScanResult,
    link: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> str:
    lines = [
        "🎉🎉🎉 *ВНИМАНИЕ! СВОБОДНАЯ КВАРТИРА!* 🎉🎉🎉",
        "",
        f"📋 Профиль: {profile_name}",
        f"📅 {format_timestamp(now)}",
        "",
        SEPARATOR,
        "",
        f"✅ Доступно для бронирования: *{scan.available_count}*",
        f"📊 Всего квартир: {scan.total_count}",
        f"🔒 Забронировано: {scan.booked_count}",
    ]
    if scan.available_items:
        lines.append("")
        lines.append("*Тексты доступных кнопок:*")
        for idx, item in enumerate(scan.available_items[:MAX_LABELS_LISTED], start=1):
            lines.append(f'{idx}. "{escape_markdown(item.text)}"')
        if scan.available_count > MAX_LABELS_LISTED:
            lines.append(f"...и ещё {scan.available_count - MAX_LABELS_LISTED}")
    lines.extend(["", SEPARATOR, "", "🏃 *СРОЧНО ПРОВЕРЬТЕ САЙТ!*"])
    lines.extend(_site_link(link))
    lines.extend(["", "⏰ *Ответьте на это сообщение, чтобы подтвердить получение!*"])
    return "\n".join(lines)


def format_reminder(
    profile_name: str,
    scan: ScanResult,
    number: int,
    total: int,
    link: Optional[str] = None,
) -> str:
    lines = [
        f"🚨🚨🚨 *НАПОМИНАНИЕ {number}/{total}* 🚨🚨🚨",
        "",
        "🏠 *СВОБОДНАЯ КВАРТИРА ЖДЁТ ВАС!*",
        "",
        f"Профиль: {profile_name}",
        f"Доступно: {scan.available_count} квартир(а)",
        "",
        "⚠️ *Квартиру могут забронировать в любой момент!*",
    ]
    link_lines = _site_link(link)
    if link_lines:
        lines.append("")
        lines.extend(link_lines)
    lines.extend(["", "_Ответьте любым сообщением, чтобы остановить напоминания_"])
    return "\n".join(lines)


def format_ack_confirmation() -> str:
    return (
        "✅ Отлично! Вы подтвердили получение уведомления о свободной квартире. "
        "Удачи с бронированием! 🏠"
    )


def format_startup_message(now: Optional[dt.datetime] = None) -> str:
    return (
        "🚀 *Мониторинг квартир запущен*\n\n"
        f"📅 {format_timestamp(now)}\n\n"
        "Бот отслеживает кнопки бронирования.\n"
        "Как только появится свободная квартира, вы получите уведомление."
    )


def format_error_message(error: str, now: Optional[dt.datetime] = None) -> str:
    return f"⚠️ *Ошибка мониторинга*\n\n{escape_markdown(error)}\n\n📅 {format_timestamp(now)}"


def format_heartbeat_message(stats: MonitorStats, now: Optional[dt.datetime] = None) -> str:
    lines = [
        "💚 *Бот работает нормально*",
        "",
        f"📅 {format_timestamp(now)}",
        "",
        SEPARATOR,
        "",
        f"📊 Проверок с запуска: {stats.total_checks}",
    ]
    if stats.last_check_time:
        lines.append(f"🕐 Последняя проверка: {format_timestamp(stats.last_check_time)}")
    lines.extend(
        [
            f"🏠 Квартир в последней проверке: {stats.total_apartments}",
            f"🔒 Из них забронировано: {stats.booked_count}",
            "",
            SEPARATOR,
            "",
            "_Следующий отчёт через 6 часов_",
        ]
    )
    return "\n".join(lines)


def format_check_report(scan: ScanResult, now: Optional[dt.datetime] = None) -> str:
    if scan.failed:
        return (
            "❌ *Проверка не завершена*\n\n"
            f"Профиль: {scan.profile_name}\n"
            "Попробуйте ещё раз через несколько минут."
        )
    duration = (scan.duration_ms or 0) / 1000
    if scan.available_count > 0:
        status_emoji = "🎉"
        available_text = f"✅ *ЕСТЬ СВОБОДНЫЕ: {scan.available_count}*"
    else:
        status_emoji = "📊"
        available_text = "🔒 Все забронированы"
    return (
        f"{status_emoji} *Результат проверки*\n\n"
        f"📋 Профиль: {scan.profile_name}\n"
        f"⏱ Время: {duration:.1f}с\n\n"
        f"📊 Всего квартир: {scan.total_count}\n"
        f"🔒 Забронировано: {scan.booked_count}\n"
        f"{available_text}\n\n"
        f"🕐 {format_timestamp(now)}"
    )
