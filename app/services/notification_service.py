"""
Telegram 通知服务：订单履约成功/失败时给用户发消息。

通知为尽力而为：任何发送失败只记录日志并返回 False，不向调用方抛出异常，
也不影响订单状态。
"""

import logging
import os
from html import escape

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramNotifier:
    """Telegram Bot API 消息发送。"""

    def __init__(
        self,
        bot_token: str | None = None,
        webapp_url: str | None = None,
        bot_username: str | None = None,
        timeout: float = 10.0,
    ):
        self.bot_token = bot_token if bot_token is not None else os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.webapp_url = (webapp_url or os.getenv("WEBAPP_URL", "")).rstrip("/")
        self.bot_username = bot_username or os.getenv("TELEGRAM_BOT_USERNAME", "esim_bot")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def _send(self, chat_id, text: str, keyboard: dict | None = None) -> bool:
        if not self.enabled:
            logger.warning("未配置 TELEGRAM_BOT_TOKEN，跳过通知: chat_id=%s", chat_id)
            return False

        payload = {"chat_id": str(chat_id), "text": text, "parse_mode": "HTML"}
        if keyboard:
            payload["reply_markup"] = keyboard
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage", json=payload
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram 通知发送失败: chat_id=%s, %s", chat_id, e)
            return False

        if not data.get("ok"):
            logger.error("Telegram 通知被拒绝: chat_id=%s, %s", chat_id, data.get("description"))
            return False
        logger.info("Telegram 通知已发送: chat_id=%s", chat_id)
        return True

    def notify_order_completed(self, telegram_id, order: dict, product: dict) -> bool:
        text = (
            "✅ <b>Оплата прошла успешно!</b>\n\n"
            "📦 <b>Ваш заказ готов</b>\n"
            f"🌍 Страна: {escape(str(product.get('country', '')))}\n"
            f"📶 Трафик: {escape(str(product.get('data_amount', '')))}\n"
            f"💰 Сумма: {order.get('total_amount')} ₽\n\n"
            "Ваш eSIM готов к активации! Нажмите кнопку ниже, чтобы получить QR-код для установки."
        )
        keyboard = None
        if self.webapp_url:
            keyboard = {"inline_keyboard": [[{
                "text": "📱 Открыть Мои eSIM",
                "web_app": {"url": f"{self.webapp_url}/my-esim"},
            }]]}
        try:
            return self._send(telegram_id, text, keyboard)
        except Exception as e:
            logger.error("构建成功通知失败: order=%s, %s", order.get("id"), e)
            return False

    def notify_order_failed(self, telegram_id, order: dict, reason: str | None = None) -> bool:
        detail = f"Причина: {escape(reason)}" if reason else \
            "Попробуйте еще раз или обратитесь в поддержку."
        text = f"❌ <b>Не удалось выдать eSIM по заказу #{order.get('id')}</b>\n\n{detail}"
        keyboard = {"inline_keyboard": [[{
            "text": "🔄 Попробовать снова",
            "url": f"https://t.me/{self.bot_username}/app",
        }]]}
        try:
            return self._send(telegram_id, text, keyboard)
        except Exception as e:
            logger.error("构建失败通知失败: order=%s, %s", order.get("id"), e)
            return False
