from __future__ import annotations

import asyncio
import html
import logging
import re
import time
from typing import Callable, Dict, Optional, Tuple

from aiogram.exceptions import TelegramBadRequest
from aiogram.types import ChatPermissions, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from nda_admin import AdminStore
from nda_errors import ConfigurationError, PlatformError, ValidationError
from nda_notify import NotifyOnce
from nda_state import Key, KeyedLocks, MemberRegistry, PendingChallenge, PendingTable, cancel_task

log = logging.getLogger("nda-gate")

NDA_BUTTON_TEXT = "✅ I Agree to the NDA"
AGREE_PREFIX = "nda_agree:"
AGREE_RE = re.compile(r"^nda_agree:(-?\d+):(\d+)$")

NOT_CONFIGURED_NOTICE = "⚠️ Bot not configured. Admin needs to run /upload_nda with the NDA file."
NOT_FOR_YOU_NOTICE = "This button is not for you!"
WRONG_CHAT_NOTICE = "This button is not valid for this chat!"
MALFORMED_NOTICE = "Invalid request."
EXPIRED_NOTICE = "This NDA request has expired."
ALREADY_NOTICE = "You have already accepted the NDA."
ACCEPTED_NOTICE = "NDA Accepted! Welcome to the chat!"
ERROR_NOTICE = "An error occurred. Please contact an administrator."


# ── Permission sets ─────────────────────────────────────────────────────────────
def deny_all_permissions() -> ChatPermissions:
    return ChatPermissions(
        can_send_messages=False,
        can_send_audios=False,
        can_send_documents=False,
        can_send_photos=False,
        can_send_videos=False,
        can_send_video_notes=False,
        can_send_voice_notes=False,
        can_send_polls=False,
        can_send_other_messages=False,
        can_add_web_page_previews=False,
        can_change_info=False,
        can_invite_users=False,
        can_pin_messages=False,
        can_manage_topics=False,
    )


def member_permissions() -> ChatPermissions:
    # chat administration rights are never handed back
    return ChatPermissions(
        can_send_messages=True,
        can_send_audios=True,
        can_send_documents=True,
        can_send_photos=True,
        can_send_videos=True,
        can_send_video_notes=True,
        can_send_voice_notes=True,
        can_send_polls=True,
        can_send_other_messages=True,
        can_add_web_page_previews=True,
        can_change_info=False,
        can_invite_users=False,
        can_pin_messages=False,
        can_manage_topics=False,
    )


# ── Callback data ───────────────────────────────────────────────────────────────
def build_agree_data(chat_id: int, user_id: int) -> str:
    return f"{AGREE_PREFIX}{chat_id}:{user_id}"


def parse_agree_data(data: Optional[str]) -> Tuple[int, int]:
    m = AGREE_RE.match(data or "")
    if not m:
        raise ValidationError(MALFORMED_NOTICE)
    return int(m.group(1)), int(m.group(2))


def check_agreement(data: Optional[str], actor_id: int, origin_chat_id: Optional[int]) -> Tuple[int, int]:
    """Validate an agree click; actor is checked before chat."""
    chat_id, user_id = parse_agree_data(data)
    if actor_id != user_id:
        raise ValidationError(NOT_FOR_YOU_NOTICE)
    if origin_chat_id is None or origin_chat_id != chat_id:
        raise ValidationError(WRONG_CHAT_NOTICE)
    return chat_id, user_id


def challenge_keyboard(chat_id: int, user_id: int) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text=NDA_BUTTON_TEXT, callback_data=build_agree_data(chat_id, user_id))
    return kb.as_markup()


def display_name(user) -> str:
    if getattr(user, "username", None):
        return f"@{user.username}"
    return html.escape(getattr(user, "first_name", None) or str(user.id))


# ── Controller ──────────────────────────────────────────────────────────────────
class GateController:
    """
    Per-(chat, user) NDA gate.

    NONE -> RESTRICTED_PENDING on join; RESTRICTED_PENDING -> CLEARED on agree,
    or -> EXPIRED_BANNED when the deadline fires first. Every transition runs
    under the key's lock, and expiry checks the registry before banning, so an
    agreement that lands while the deadline is firing can never be followed by
    a ban.

    Agreement does not cancel the deadline. The task moves to `clearing` and,
    when it fires, consumes the registry entry instead of banning.
    """

    def __init__(
        self,
        bot,
        admin: AdminStore,
        *,
        timeout_seconds: int = 60,
        ban_seconds: int = 600,
        nda_link: str = "",
        notifier: Optional[NotifyOnce] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.bot = bot
        self.admin = admin
        self.timeout_seconds = timeout_seconds
        self.ban_seconds = ban_seconds
        self.nda_link = nda_link
        self.notifier = notifier
        self.clock = clock
        self.registry = MemberRegistry()
        self.pending = PendingTable()
        self.locks = KeyedLocks()
        self.clearing: Dict[Key, asyncio.Task] = {}

    # ── join ──
    async def join(self, chat_id: int, user, chat_title: Optional[str] = None) -> bool:
        """Restrict a new member and post the challenge. Returns True if a challenge was armed."""
        uid = user.id
        log.info("JOIN: chat=%s (%s) uid=%s name=%s", chat_id, chat_title or "-", uid, display_name(user))

        async with self.locks.hold(chat_id, uid):
            # an unconfigured gate is reported for every joiner, bots included
            try:
                document_ref = self.admin.require_document()
            except ConfigurationError as e:
                log.error("JOIN: %s (chat=%s uid=%s left unrestricted)", e, chat_id, uid)
                await self._notify_unconfigured(chat_id, chat_title)
                return False
            if user.is_bot:
                log.info("JOIN: skip bot chat=%s uid=%s", chat_id, uid)
                return False
            if self.registry.contains(chat_id, uid):
                log.info("JOIN: uid=%s already cleared in chat=%s", uid, chat_id)
                return False
            if self.pending.get(chat_id, uid) is not None:
                log.info("JOIN: duplicate join ignored, challenge pending chat=%s uid=%s", chat_id, uid)
                return False

            try:
                await self._call(
                    "restrict", chat_id, uid,
                    self.bot.restrict_chat_member(chat_id=chat_id, user_id=uid, permissions=deny_all_permissions()),
                )
            except PlatformError:
                return False
            log.info("JOIN: restricted chat=%s uid=%s", chat_id, uid)

            pc = PendingChallenge(chat_id=chat_id, user_id=uid, created_at=self.clock())
            self.pending.add(pc)
            try:
                sent = await self._call("send challenge", chat_id, uid, self._send_challenge(chat_id, user, document_ref))
                pc.message_id = sent.message_id
                log.info("JOIN: challenge sent chat=%s uid=%s mid=%s", chat_id, uid, pc.message_id)
            except PlatformError:
                # deadline is armed even without a prompt
                pass
            pc.deadline = asyncio.create_task(
                self._deadline(chat_id, uid), name=f"nda-deadline:{chat_id}:{uid}"
            )
            return True

    async def _send_challenge(self, chat_id: int, user, document_ref: str):
        name = display_name(user)
        kb = challenge_keyboard(chat_id, user.id)
        if self.nda_link:
            text = (
                f'📄 {name}, please review the <a href="{html.escape(self.nda_link, quote=True)}">NDA</a> '
                f"and click below to agree within {self.timeout_seconds} seconds, or you will be removed."
            )
            return await self.bot.send_message(
                chat_id=chat_id, text=text, reply_markup=kb, disable_web_page_preview=True
            )
        caption = (
            f"📄 {name}, please review the NDA and click below to agree "
            f"within {self.timeout_seconds} seconds, or you will be removed."
        )
        return await self.bot.send_document(chat_id=chat_id, document=document_ref, caption=caption, reply_markup=kb)

    async def _notify_unconfigured(self, chat_id: int, chat_title: Optional[str]) -> None:
        try:
            await self._call("config notice", chat_id, None, self.bot.send_message(chat_id=chat_id, text=NOT_CONFIGURED_NOTICE))
        except PlatformError:
            pass
        if self.notifier is not None:
            await self.notifier.notify(
                ("unconfigured", chat_id),
                f"NDA gate is not configured but members are joining {chat_title or chat_id}.\n"
                "Run /upload_nda and send the NDA file.",
            )

    # ── agree ──
    async def agree(self, cb) -> bool:
        """Handle an agree-button click. Returns True if the user was cleared."""
        actor_id = cb.from_user.id
        message = getattr(cb, "message", None)
        origin_chat_id = message.chat.id if message is not None else None
        try:
            chat_id, uid = check_agreement(cb.data, actor_id, origin_chat_id)
        except ValidationError as e:
            log.info("AGREE: rejected data=%r actor=%s chat=%s: %s", cb.data, actor_id, origin_chat_id, e.notice)
            await self._answer(cb, e.notice, alert=True)
            return False

        async with self.locks.hold(chat_id, uid):
            pc = self.pending.get(chat_id, uid)
            if pc is None:
                notice = ALREADY_NOTICE if self.registry.contains(chat_id, uid) else EXPIRED_NOTICE
                log.info("AGREE: no pending challenge chat=%s uid=%s", chat_id, uid)
                await self._answer(cb, notice, alert=True)
                return False

            self.registry.add(chat_id, uid)
            try:
                await self._call(
                    "unrestrict", chat_id, uid,
                    self.bot.restrict_chat_member(chat_id=chat_id, user_id=uid, permissions=member_permissions()),
                )
            except PlatformError:
                # challenge stays so the button can be pressed again
                await self._answer(cb, ERROR_NOTICE)
                return False
            log.info("AGREE: uid=%s accepted NDA in chat=%s", uid, chat_id)

            self.pending.pop(chat_id, uid, keep_deadline=True)
            if pc.deadline is not None:
                self.clearing[pc.key] = pc.deadline
                pc.deadline = None
            await self._delete_challenge(pc)
        await self._answer(cb, ACCEPTED_NOTICE)
        return True

    # ── expire ──
    async def _deadline(self, chat_id: int, user_id: int) -> None:
        await asyncio.sleep(self.timeout_seconds)
        try:
            await self.expire(chat_id, user_id)
        except Exception:
            log.exception("EXPIRE: crashed chat=%s uid=%s", chat_id, user_id)

    async def expire(self, chat_id: int, user_id: int) -> bool:
        """Deadline reached. Returns True if the ban path was taken (ban failures are only logged)."""
        async with self.locks.hold(chat_id, user_id):
            pc = self.pending.pop(chat_id, user_id)
            self._drop_clearing(chat_id, user_id)
            if self.registry.discard(chat_id, user_id):
                log.info("EXPIRE: uid=%s cleared before deadline in chat=%s, no ban", user_id, chat_id)
                if pc is not None:
                    await self._delete_challenge(pc)
                return False
            if pc is None:
                log.info("EXPIRE: nothing pending chat=%s uid=%s, no ban", chat_id, user_id)
                return False

            until = int(self.clock()) + self.ban_seconds if self.ban_seconds > 0 else 0
            try:
                await self._call(
                    "ban", chat_id, user_id,
                    self.bot.ban_chat_member(chat_id=chat_id, user_id=user_id, until_date=until),
                )
                log.info("EXPIRE: banned uid=%s chat=%s until=%s", user_id, chat_id, until or "forever")
            except PlatformError:
                pass
            await self._delete_challenge(pc)
            return True

    def _drop_clearing(self, chat_id: int, user_id: int) -> None:
        cancel_task(self.clearing.pop((chat_id, user_id), None))

    # ── leave ──
    async def leave(self, chat_id: int, user_id: int) -> bool:
        """Member left or was removed; their clearance no longer applies."""
        async with self.locks.hold(chat_id, user_id):
            dropped = self.registry.discard(chat_id, user_id)
            self._drop_clearing(chat_id, user_id)
        if dropped:
            log.info("LEAVE: clearance dropped chat=%s uid=%s", chat_id, user_id)
        return dropped

    async def close(self) -> None:
        n = self.pending.clear()
        for key in list(self.clearing):
            self._drop_clearing(*key)
        log.info("SHUTDOWN: cancelled %s pending challenge(s)", n)

    def stats(self) -> dict:
        return {"pending": len(self.pending), "cleared": self.registry.count()}

    # ── platform helpers ──
    async def _call(self, action: str, chat_id: int, user_id: Optional[int], awaitable):
        try:
            return await awaitable
        except TelegramBadRequest as e:
            log.warning("%s: badrequest chat=%s uid=%s err=%s", action, chat_id, user_id, e)
            raise PlatformError(action, chat_id, user_id, e) from e
        except Exception as e:
            log.exception("%s: failed chat=%s uid=%s", action, chat_id, user_id)
            raise PlatformError(action, chat_id, user_id, e) from e

    async def _delete_challenge(self, pc: PendingChallenge) -> None:
        if pc.message_id is None:
            return
        try:
            await self._call(
                "delete challenge", pc.chat_id, pc.user_id,
                self.bot.delete_message(chat_id=pc.chat_id, message_id=pc.message_id),
            )
        except PlatformError:
            return
        log.info("challenge deleted chat=%s uid=%s mid=%s", pc.chat_id, pc.user_id, pc.message_id)

    async def _answer(self, cb, text: str, alert: bool = False) -> None:
        try:
            await cb.answer(text, show_alert=alert)
        except Exception as e:
            log.debug("answer callback failed: %s", e)
