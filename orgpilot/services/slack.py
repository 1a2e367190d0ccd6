"""Slack Web API access and request signing.

Every bot message is threaded: :class:`ReplyChannel` refuses to post
without a ``thread_ts`` so nothing lands top-level in a channel.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx

from orgpilot import constants

logger = logging.getLogger(__name__)


class SlackApiError(Exception):
    pass


@dataclass
class SlackUser:
    id: str
    email: Optional[str]
    real_name: Optional[str]


class SlackService:
    def __init__(
        self,
        signing_secret: Optional[str],
        *,
        api_base: str = "https://slack.com/api",
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._signing_secret = signing_secret or ""
        self._api_base = api_base.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    # ------------------------------------------------------------------
    # Request signing
    # ------------------------------------------------------------------

    def compute_signature(self, timestamp: str, raw_body: bytes) -> str:
        base = f"{constants.SLACK_SIGNATURE_VERSION}:{timestamp}:".encode() + raw_body
        digest = hmac.new(self._signing_secret.encode(), base, hashlib.sha256).hexdigest()
        return f"{constants.SLACK_SIGNATURE_VERSION}={digest}"

    def verify_signature(
        self,
        signature: Optional[str],
        timestamp: Optional[str],
        raw_body: bytes,
        *,
        now: Optional[float] = None,
    ) -> bool:
        """HMAC-SHA256 over ``v0:{timestamp}:{raw_body}`` with a replay window."""

        if not self._signing_secret or not signature or not timestamp:
            return False
        try:
            ts_int = int(timestamp)
        except ValueError:
            return False

        current = int(now if now is not None else time.time())
        if abs(current - ts_int) > constants.SLACK_TIMESTAMP_TOLERANCE_S:
            return False

        expected = self.compute_signature(timestamp, raw_body)
        return hmac.compare_digest(expected, signature)

    # ------------------------------------------------------------------
    # Web API
    # ------------------------------------------------------------------

    async def _call(self, token: str, method: str, *, json: Optional[Dict[str, Any]] = None, params=None) -> Dict[str, Any]:
        url = f"{self._api_base}/{method}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                if json is not None:
                    response = await client.post(url, headers=headers, json=json, timeout=self._timeout_s)
                else:
                    response = await client.get(url, headers=headers, params=params, timeout=self._timeout_s)
        except httpx.RequestError as exc:
            raise SlackApiError(f"Slack {method} request failed: {exc}") from exc

        data = response.json()
        if not data.get("ok"):
            raise SlackApiError(f"Slack {method} failed: {data.get('error', 'unknown_error')}")
        return data

    async def post_message(
        self,
        token: str,
        *,
        channel: str,
        thread_ts: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        if not thread_ts:
            raise ValueError("Bot replies must be threaded")
        body: Dict[str, Any] = {"channel": channel, "thread_ts": thread_ts, "text": text}
        if blocks:
            body["blocks"] = blocks
        return await self._call(token, "chat.postMessage", json=body)

    async def get_user(self, token: str, slack_user_id: str) -> SlackUser:
        data = await self._call(token, "users.info", params={"user": slack_user_id})
        user = data.get("user") or {}
        profile = user.get("profile") or {}
        return SlackUser(
            id=slack_user_id,
            email=(profile.get("email") or "").lower() or None,
            real_name=profile.get("real_name") or user.get("real_name"),
        )

    def reply_channel(self, token: str, channel: str, thread_ts: str) -> "ReplyChannel":
        return ReplyChannel(self, token, channel, thread_ts)


class ReplyChannel:
    """Posts into one Slack thread."""

    def __init__(self, slack: SlackService, token: str, channel: str, thread_ts: str):
        if not channel or not thread_ts:
            raise ValueError("ReplyChannel needs a channel and a thread timestamp")
        self._slack = slack
        self._token = token
        self.channel = channel
        self.thread_ts = thread_ts

    async def send(self, text: str, *, blocks: Optional[List[Dict[str, Any]]] = None) -> None:
        await self._slack.post_message(
            self._token, channel=self.channel, thread_ts=self.thread_ts, text=text, blocks=blocks
        )

    async def send_quietly(self, text: str) -> bool:
        """Best-effort send; delivery failures are only logged."""

        try:
            await self.send(text)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to post reply to {self.channel}/{self.thread_ts}: {exc}")
            return False
