"""Operator alerts over Telegram.

Escalations (exhausted refunds, claims stuck after the secret was revealed)
need a human. Alerts go to every configured admin id through the aiogram bot;
without a bot token they are only logged.
"""

import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from atomicswap.config import Settings, get_settings

logger = logging.getLogger(__name__)


class OperatorAlerter:
    """Sends escalation messages to operators."""

    def __init__(self, settings: Optional[Settings] = None, bot: Optional[Bot] = None):
        """Initialize with optional bot instance.

        If no bot is provided one is created lazily from TELEGRAM_BOT_TOKEN.
        """
        self._settings = settings or get_settings()
        self._bot = bot

    def _get_bot(self) -> Optional[Bot]:
        if self._bot is None and self._settings.telegram_bot_token:
            self._bot = Bot(token=self._settings.telegram_bot_token)
        return self._bot

    async def alert(self, title: str, details: str, swap_id: Optional[str] = None) -> int:
        """Send an alert to all admins.

        Returns:
            Number of admins the alert was delivered to
        """
        header = f"<b>{title}</b>"
        if swap_id:
            header += f"\nSwap: <code>{swap_id}</code>"
        message = f"{header}\n\n{details}"

        logger.critical(f"OPERATOR ALERT: {title} (swap {swap_id}): {details}")

        bot = self._get_bot()
        if not bot or not self._settings.admin_ids:
            logger.warning("Operator alert not delivered - bot or admin ids not configured")
            return 0

        delivered = 0
        for admin_id in self._settings.admin_ids:
            try:
                await bot.send_message(chat_id=admin_id, text=message, parse_mode="HTML")
                delivered += 1
            except TelegramForbiddenError:
                logger.warning(f"Admin {admin_id} has blocked the bot")
            except TelegramBadRequest as e:
                logger.error(f"Bad request sending alert to {admin_id}: {e}")
            except Exception as e:
                logger.error(f"Failed to send alert to {admin_id}: {e}")
        return delivered

    async def close(self) -> None:
        """Close the bot session (call on shutdown)."""
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None
