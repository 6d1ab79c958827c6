#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import html
import logging
import os
import platform
import time
from typing import Any, Awaitable, Callable, Dict

from aiogram import Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ChatMemberStatus, ChatType, ParseMode
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, ChatMemberUpdated, Message, Update
from sdnotify import SystemdNotifier

from nda_admin import AdminStore
from nda_env import Settings, load_env_file, log_settings, read_settings
from nda_errors import AuthorizationError
from nda_gate import AGREE_PREFIX, GateController
from nda_notify import NotifyOnce

# ── Meta / version ──────────────────────────────────────────────────────────────
APP_NAME = "nda-gate"
START_MONO = time.monotonic()

ALLOWED_UPDATES = ["message", "callback_query", "chat_member", "my_chat_member"]

# ── Logging ─────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
log = logging.getLogger(APP_NAME)

# ── Routers ─────────────────────────────────────────────────────────────────────
# commands first so they win over the catch-all handlers
cmd_router = Router(name="commands")
router = Router(name="main")

group_chat_types = {ChatType.GROUP, ChatType.SUPERGROUP}
MEMBER_STATUSES = {ChatMemberStatus.MEMBER, ChatMemberStatus.ADMINISTRATOR, ChatMemberStatus.CREATOR}
# admins and the owner are never gated
GATED_STATUSES = {ChatMemberStatus.MEMBER, ChatMemberStatus.RESTRICTED}


def _is_member(cm) -> bool:
    # restricted users may or may not be in the chat
    if cm.status == ChatMemberStatus.RESTRICTED:
        return bool(getattr(cm, "is_member", False))
    return cm.status in MEMBER_STATUSES


def _who(m: Message) -> str:
    u = m.from_user
    if not u:
        return "-"
    return f"@{u.username}" if u.username else (u.first_name or str(u.id))


def _log_cmd_ignored(m: Message, cmd: str):
    uid = m.from_user.id if m.from_user else None
    log.info("CMD %s ignored: user is not admin chat=%s uid=%s %s", cmd, getattr(m.chat, "id", None), uid, _who(m))


def _uptime() -> str:
    uptime = int(time.monotonic() - START_MONO)
    return f"{uptime // 3600:02d}:{(uptime % 3600) // 60:02d}:{uptime % 60:02d}"


# ── Informational commands ──────────────────────────────────────────────────────
@cmd_router.message(CommandStart())
async def start_cmd(m: Message):
    log.info("CMD /start uid=%s %s", getattr(m.from_user, "id", None), _who(m))
    await m.answer("Hello! I'm the NDA bot. Send /test to verify I'm working.")


@cmd_router.message(Command("test"))
async def test_cmd(m: Message):
    log.info("CMD /test uid=%s %s", getattr(m.from_user, "id", None), _who(m))
    await m.answer("Bot is working! ✅")


@cmd_router.message(Command("healthz", "health"))
async def healthz_cmd(m: Message):
    log.info("CMD /healthz uid=%s chat=%s", getattr(m.from_user, "id", None), getattr(m.chat, "title", None) or "private")
    await m.answer("I'm OK! 🤖")


@cmd_router.message(Command("ping"))
async def ping_cmd(m: Message, bot: Bot, admin: AdminStore):
    if not admin.is_admin(getattr(m.from_user, "id", None)):
        _log_cmd_ignored(m, "/ping"); return
    t0 = time.monotonic()
    try:
        await bot.get_me()
    except Exception as e:
        log.warning("CMD /ping: get_me failed: %s", e)
    dt = int((time.monotonic() - t0) * 1000)
    await m.answer(f"pong {dt}ms")


@cmd_router.message(Command("version"))
async def version_cmd(m: Message, admin: AdminStore, gate: GateController, settings: Settings):
    if not admin.is_admin(getattr(m.from_user, "id", None)):
        _log_cmd_ignored(m, "/version"); return
    import aiogram
    st = gate.stats()
    await m.answer(
        "🧩 Bot version\n"
        f"- app: {APP_NAME} {settings.app_version}\n"
        f"- aiogram: {aiogram.__version__}\n"
        f"- python: {platform.python_version()}\n"
        f"- uptime: {_uptime()}\n"
        f"- pending: {st['pending']}\n"
        f"- cleared: {st['cleared']}"
    )


# ── Admin: NDA document ─────────────────────────────────────────────────────────
@cmd_router.message(Command("upload_nda"))
async def upload_nda_cmd(m: Message, admin: AdminStore):
    try:
        admin.request_upload(getattr(m.from_user, "id", None))
    except AuthorizationError as e:
        log.info("CMD /upload_nda rejected: %s", e)
        await m.answer("❌ Only the admin can use this command")
        return
    await m.answer("📎 Please send the NDA PDF file now...")


@cmd_router.message(Command("nda_status"))
async def nda_status_cmd(m: Message, admin: AdminStore, settings: Settings):
    if not admin.is_admin(getattr(m.from_user, "id", None)):
        _log_cmd_ignored(m, "/nda_status"); return
    receipt = admin.config.last_receipt
    if admin.document_ref:
        doc = html.escape(receipt.file_name or "document") if receipt else "document"
        lines = [f"📄 NDA: {doc}"]
    else:
        lines = ["⚠️ NDA: not configured (run /upload_nda)"]
    if admin.config.awaiting_upload:
        lines.append("📎 Waiting for the NDA file upload")
    ban = f"{settings.ban_minutes} min" if settings.ban_minutes else "permanent"
    lines.append(f"⏱ Timeout: {settings.timeout_seconds}s, ban: {ban}")
    await m.answer("\n".join(lines))


@router.message(F.document)
async def on_document(m: Message, admin: AdminStore):
    doc = m.document
    receipt = admin.receive_document(
        getattr(m.from_user, "id", None), doc.file_id, doc.file_name, doc.file_size
    )
    if receipt is None:
        return
    await m.answer(receipt.describe())


# ── Chat member updates ─────────────────────────────────────────────────────────
@router.chat_member()
async def on_chat_member_update(ev: ChatMemberUpdated, gate: GateController):
    if ev.chat.type not in group_chat_types:
        return
    old_s = ev.old_chat_member.status
    new_s = ev.new_chat_member.status
    user = ev.new_chat_member.user
    log.debug("MEMBER: chat=%s uid=%s %s->%s", ev.chat.id, user.id, old_s, new_s)
    was_member = _is_member(ev.old_chat_member)
    is_member = _is_member(ev.new_chat_member)
    if not was_member and is_member and new_s in GATED_STATUSES:
        await gate.join(ev.chat.id, user, ev.chat.title)
    elif was_member and not is_member:
        await gate.leave(ev.chat.id, user.id)


@router.callback_query(F.data.startswith(AGREE_PREFIX))
async def on_agree(cb: CallbackQuery, gate: GateController):
    await gate.agree(cb)


# ── Update logging ──────────────────────────────────────────────────────────────
async def log_updates(
    handler: Callable[[Update, Dict[str, Any]], Awaitable[Any]],
    event: Update,
    data: Dict[str, Any],
) -> Any:
    log.debug("UPDATE: id=%s type=%s", event.update_id, event.event_type)
    return await handler(event, data)


async def on_shutdown(gate: GateController):
    await gate.close()


def build_dispatcher(gate: GateController, admin: AdminStore, settings: Settings) -> Dispatcher:
    dp = Dispatcher(gate=gate, admin=admin, settings=settings)
    dp.update.outer_middleware(log_updates)
    dp.include_router(cmd_router)
    dp.include_router(router)
    dp.shutdown.register(on_shutdown)
    return dp


# ── Optional systemd watchdog heartbeat ────────────────────────────────────────
async def watchdog_task():
    try:
        n = SystemdNotifier()
        n.notify("READY=1")
        wd_usec = os.getenv("WATCHDOG_USEC")
        if not wd_usec:
            return
        interval = max(1.0, int(wd_usec) / 1_000_000 / 2.0)  # half of watchdog
        log.info("Systemd watchdog enabled: interval=%.1fs", interval)
        while True:
            n.notify("WATCHDOG=1")
            await asyncio.sleep(interval)
    except (OSError, ValueError) as e:
        log.debug("Watchdog task stopped: %s", e)


# ── Entry point ─────────────────────────────────────────────────────────────────
async def main():
    load_env_file()
    settings = read_settings()
    logging.getLogger().setLevel(settings.log_level)
    log_settings(settings)

    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    admin = AdminStore(settings.admin_id)
    gate = GateController(
        bot,
        admin,
        timeout_seconds=settings.timeout_seconds,
        ban_seconds=settings.ban_seconds,
        nda_link=settings.nda_link,
        notifier=NotifyOnce(bot, settings.admin_id),
    )
    dp = build_dispatcher(gate, admin, settings)

    me = await bot.get_me()
    log.info("Bot started: %s (@%s) version=%s", me.first_name, me.username, settings.app_version)
    log.info("Remember to run /upload_nda then send the NDA file to configure the bot")

    wd = asyncio.create_task(watchdog_task())
    try:
        await dp.start_polling(bot, allowed_updates=ALLOWED_UPDATES)
    finally:
        wd.cancel()
        log.info("Shutting down")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
