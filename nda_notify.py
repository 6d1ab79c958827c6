import logging
from typing import Hashable, Set

log = logging.getLogger("nda-gate")


class NotifyOnce:
    """
    Sends the admin a direct message at most once per key for the life of the process.
    A key is only remembered after a successful send, so a failed DM is retried next time.
    """

    def __init__(self, bot, admin_id: int):
        self.bot = bot
        self.admin_id = int(admin_id)
        self._sent: Set[Hashable] = set()

    async def notify(self, key: Hashable, text: str) -> bool:
        if key in self._sent:
            return False
        try:
            await self.bot.send_message(chat_id=self.admin_id, text=text, disable_notification=True)
        except Exception as e:
            log.warning("NOTIFY: DM to admin=%s failed key=%s err=%r", self.admin_id, key, e)
            return False
        self._sent.add(key)
        log.info("NOTIFY: sent admin=%s key=%s", self.admin_id, key)
        return True
