from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiogram.types import User

from nda_admin import AdminStore
from nda_gate import GateController

ADMIN_ID = 42
NOW = 1_700_000_000.0


class FakeBot:
    """Records Telegram calls; sent messages get increasing message ids."""

    def __init__(self):
        self._next_mid = 500
        self.restrict_chat_member = AsyncMock(return_value=True)
        self.ban_chat_member = AsyncMock(return_value=True)
        self.delete_message = AsyncMock(return_value=True)
        self.send_message = AsyncMock(side_effect=self._sent)
        self.send_document = AsyncMock(side_effect=self._sent)
        self.get_me = AsyncMock(return_value=SimpleNamespace(id=1, username="nda_bot", first_name="NDA"))

    async def _sent(self, *args, **kwargs):
        self._next_mid += 1
        return SimpleNamespace(message_id=self._next_mid, chat=SimpleNamespace(id=kwargs.get("chat_id")))


def make_user(uid: int, username=None, first_name="Ann", is_bot=False) -> User:
    return User(id=uid, is_bot=is_bot, first_name=first_name, username=username)


def make_callback(actor_id: int, chat_id, data: str):
    message = None if chat_id is None else SimpleNamespace(chat=SimpleNamespace(id=chat_id), message_id=1)
    return SimpleNamespace(
        from_user=SimpleNamespace(id=actor_id),
        message=message,
        data=data,
        answer=AsyncMock(),
    )


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def admin():
    store = AdminStore(ADMIN_ID)
    store.request_upload(ADMIN_ID)
    store.receive_document(ADMIN_ID, "FILE-ID-1", "nda.pdf", 20480)
    return store


@pytest_asyncio.fixture
async def gate(bot, admin):
    g = GateController(bot, admin, timeout_seconds=60, ban_seconds=600, clock=lambda: NOW)
    yield g
    await g.close()
