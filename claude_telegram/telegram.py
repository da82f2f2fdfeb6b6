"""Telegram Bot API helpers, stdlib urllib only."""

from __future__ import annotations

import json
import logging
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

log = logging.getLogger("claude_telegram")

MAX_MESSAGE_LENGTH = 4096


class TelegramClient:
    """Thin synchronous wrapper around the Bot API.

    Every call returns a falsy value on failure instead of raising; async
    callers run these methods through ``asyncio.to_thread``.
    """

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self._api_base = f"https://api.telegram.org/bot{bot_token}"

    def request(self, method: str, payload: dict, timeout: int = 40) -> dict:
        body = json.dumps(payload).encode()
        req = Request(
            f"{self._api_base}/{method}",
            data=body,
            headers={"Content-Type": "application/json"},
        )
        try:
            resp = urlopen(req, timeout=timeout)
            return json.loads(resp.read())
        except HTTPError as exc:
            # The API explains 4xx errors in the body ("message is not modified", ...).
            try:
                detail = json.loads(exc.read()).get("description", "")
            except (OSError, ValueError):
                detail = ""
            log.warning("tg_request %s failed: %s %s", method, exc.code, detail)
            return {}
        except (URLError, OSError, json.JSONDecodeError) as exc:
            log.error("tg_request %s failed: %s", method, exc)
            return {}

    def send(self, chat_id: int, text: str, reply_to: int | None = None) -> int | None:
        """Send a message. Returns the new message_id or None."""
        data: dict = {"chat_id": chat_id, "text": text[:MAX_MESSAGE_LENGTH]}
        if reply_to:
            data["reply_parameters"] = {"message_id": reply_to}
        result = self.request("sendMessage", data)
        return result.get("result", {}).get("message_id")

    def edit(self, chat_id: int, message_id: int, text: str) -> bool:
        """Edit an existing message. Returns True on success."""
        result = self.request("editMessageText", {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text[:MAX_MESSAGE_LENGTH],
        })
        return bool(result.get("ok"))

    def delete_message(self, chat_id: int, message_id: int) -> bool:
        result = self.request("deleteMessage", {
            "chat_id": chat_id,
            "message_id": message_id,
        })
        return bool(result.get("ok"))

    def typing(self, chat_id: int):
        """Send 'typing...' indicator; lasts ~5s on client side."""
        self.request(
            "sendChatAction",
            {"chat_id": chat_id, "action": "typing"},
            timeout=5,
        )

    def get_me(self) -> dict:
        return self.request("getMe", {}).get("result", {})

    def set_my_commands(self, commands: list[dict]) -> bool:
        """Register bot commands menu. Each dict: {"command": "...", "description": "..."}."""
        result = self.request("setMyCommands", {"commands": commands})
        return bool(result.get("ok"))

    def poll(self, offset: int, poll_timeout: int = 30) -> list[dict]:
        data: dict = {
            "timeout": poll_timeout,
            "allowed_updates": ["message"],
        }
        if offset:
            data["offset"] = offset
        result = self.request("getUpdates", data, timeout=poll_timeout + 10)
        return result.get("result", [])
