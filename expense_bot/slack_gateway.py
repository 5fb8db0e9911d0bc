# expense_bot/slack_gateway.py
"""
Thin wrapper around the Slack Web API and private-file downloads.

Only the calls the engine needs: post a message, get a permalink, resolve a display
name, download a private file with the bot token.
"""

from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from urllib3.util.retry import Retry

from expense_bot import monitoring
from expense_bot.errors import ChatPlatformError, FileDownloadError


def _slack_error_code(exc: SlackApiError) -> str:
    response = getattr(exc, "response", None)
    if response is None:
        return str(exc)
    return response.get("error") or str(exc)


def build_download_session(retries: int) -> requests.Session:
    """GET-only retries for downloads (idempotent reads); backoff on 429/5xx and connection errors."""
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class SlackGateway:
    def __init__(self, client: WebClient, bot_token: str, timeout: int = 30,
                 download_retries: int = 2, session: Optional[requests.Session] = None):
        self.client = client
        self.bot_token = bot_token
        self.timeout = timeout
        self._session = session or build_download_session(download_retries)

    def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Dict[str, Any]:
        """Returns {"channel": ..., "ts": ...} of the posted message."""
        kwargs: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        try:
            resp = self.client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            raise ChatPlatformError(f"chat.postMessage to {channel} failed: {_slack_error_code(e)}") from e
        if not resp.get("ok", True) or not resp.get("ts"):
            raise ChatPlatformError(f"chat.postMessage to {channel} returned no message timestamp")
        return {"channel": resp.get("channel") or channel, "ts": resp["ts"]}

    def get_permalink(self, channel: str, message_ts: str) -> Optional[str]:
        try:
            resp = self.client.chat_getPermalink(channel=channel, message_ts=message_ts)
        except SlackApiError as e:
            monitoring.logger.warning(
                "chat.getPermalink failed",
                extra={"channel": channel, "ts": message_ts, "error": _slack_error_code(e)},
            )
            return None
        return resp.get("permalink")

    def lookup_display_name(self, user_id: str, fallback: Optional[str] = None) -> str:
        """real_name, then display_name, then `fallback` (e.g. the username), then a user mention."""
        default = fallback or f"<@{user_id}>"
        try:
            resp = self.client.users_info(user=user_id)
        except SlackApiError as e:
            monitoring.logger.warning(
                "users.info failed; falling back to username or mention",
                extra={"user_id": user_id, "error": _slack_error_code(e)},
            )
            return default
        profile = (resp.get("user") or {}).get("profile") or {}
        return profile.get("real_name") or profile.get("display_name") or default

    def download_file(self, url: str) -> bytes:
        try:
            resp = self._session.get(
                url,
                headers={"Authorization": f"Bearer {self.bot_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FileDownloadError(f"Slack file download failed: {e}") from e
        if resp.status_code != 200:
            raise FileDownloadError(f"Slack file download failed: {resp.status_code}")
        return resp.content
