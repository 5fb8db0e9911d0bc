# expense_bot/config.py
"""
Application configuration loaded from environment variables (after python-dotenv has
populated them from `.env`).

Required:
- SLACK_BOT_TOKEN, EXPENSE_CHANNEL_ID, ACCOUNTING_CHANNEL_ID
- GOOGLE_DRIVE_ROOT_FOLDER_ID
- SHEET_TARGET (or DEFAULT_SHEET_TARGET), JSON: {"spreadsheetId": "...", "tabName": "...", "gid": "..."}

Everything else has a default; see load_config().
"""

import os
import json
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from expense_bot.errors import ConfigError

DEFAULT_RECEIPT_TEMPLATE = (
    "Please attach your receipt in the thread {threadLink}. It will be processed automatically."
)


class SheetTarget(BaseModel):
    """A spreadsheet + tab pair; gid is only used to build row deep links."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    spreadsheet_id: str = Field(alias="spreadsheetId")
    tab_name: str = Field(default="Requests", alias="tabName")
    gid: Optional[str] = None


class SlackSettings(BaseModel):
    bot_token: str
    signing_secret: Optional[str] = None
    app_token: Optional[str] = None
    socket_mode: bool = False
    finance_channel_id: str
    accounting_channel_id: str
    approve_reaction: str = "white_check_mark"
    reject_reaction: str = "x"
    modal_callback_id: str = "expense_request_view"
    shortcut_callback_id: str = "expense_request"
    complete_command: str = "/expense-complete"
    http_timeout: int = 30
    download_retries: int = 2


class GoogleSettings(BaseModel):
    credentials_json: Optional[str] = None
    application_credentials_path: Optional[str] = None
    drive_root_folder_id: str
    shared_drive_id: Optional[str] = None
    sharing_domain: Optional[str] = None
    sheet: SheetTarget
    user_sheets: Dict[str, SheetTarget] = Field(default_factory=dict)
    http_timeout: int = 30
    read_retries: int = 2


class LedgerSettings(BaseModel):
    request_id_prefix: str = "EXP"
    currency: str = "JPY"
    receipt_instructions_template: str = DEFAULT_RECEIPT_TEMPLATE
    max_filename_title_length: int = 20
    cache_policy: str = "none"  # "none" | "lru" | "ttl"
    cache_max_entries: int = 1024
    cache_ttl_seconds: float = 3600.0
    completion_requires_approval: bool = False
    status_forward_only: bool = False


class AppConfig(BaseModel):
    environment: str = "development"
    timezone: str = "Asia/Tokyo"
    slack: SlackSettings
    google: GoogleSettings
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)

    def lookup_targets(self) -> List[SheetTarget]:
        """Default target first, then every distinct per-user target."""
        targets = [self.google.sheet]
        for target in self.google.user_sheets.values():
            if target not in targets:
                targets.append(target)
        return targets


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if not value:
        raise ConfigError(f"Environment variable {name} is required")
    return value


def _parse_json(name: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{name} is not valid JSON: {e}") from e


def parse_sheet_target(raw: str, default_tab: str = "Requests", name: str = "SHEET_TARGET") -> SheetTarget:
    data = _parse_json(name, raw)
    if not isinstance(data, dict) or not data.get("spreadsheetId"):
        raise ConfigError(f"{name} must be a JSON object with a spreadsheetId")
    data.setdefault("tabName", default_tab)
    if data.get("gid") is not None:
        data["gid"] = str(data["gid"])
    return SheetTarget(**data)


def _parse_user_sheets(raw: Optional[str], default_tab: str) -> Dict[str, SheetTarget]:
    if not raw:
        return {}
    data = _parse_json("USER_SHEET_TARGETS", raw)
    if not isinstance(data, dict):
        raise ConfigError("USER_SHEET_TARGETS must be a JSON object keyed by Slack user id")
    out: Dict[str, SheetTarget] = {}
    for user_id, target in data.items():
        out[user_id] = parse_sheet_target(json.dumps(target), default_tab, name=f"USER_SHEET_TARGETS[{user_id}]")
    return out


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build AppConfig from `env` (defaults to os.environ). Raises ConfigError."""
    env = os.environ if env is None else env

    default_tab = env.get("DEFAULT_SHEET_TAB_NAME", "Requests")
    sheet_raw = env.get("SHEET_TARGET") or env.get("DEFAULT_SHEET_TARGET")
    if not sheet_raw:
        raise ConfigError("Environment variable SHEET_TARGET (or DEFAULT_SHEET_TARGET) is required")

    try:
        return AppConfig(
            environment=env.get("ENVIRONMENT", "development"),
            timezone=env.get("APP_TIMEZONE", "Asia/Tokyo"),
            slack=SlackSettings(
                bot_token=_require(env, "SLACK_BOT_TOKEN"),
                signing_secret=env.get("SLACK_SIGNING_SECRET") or None,
                app_token=env.get("SLACK_APP_TOKEN") or None,
                socket_mode=_flag(env.get("SOCKET_MODE")),
                finance_channel_id=_require(env, "EXPENSE_CHANNEL_ID"),
                accounting_channel_id=_require(env, "ACCOUNTING_CHANNEL_ID"),
                approve_reaction=env.get("APPROVE_REACTION", "white_check_mark"),
                reject_reaction=env.get("REJECT_REACTION", "x"),
                modal_callback_id=env.get("EXPENSE_MODAL_CALLBACK_ID", "expense_request_view"),
                shortcut_callback_id=env.get("EXPENSE_SHORTCUT_CALLBACK_ID", "expense_request"),
                complete_command=env.get("EXPENSE_COMPLETE_COMMAND", "/expense-complete"),
                http_timeout=int(env.get("SLACK_HTTP_TIMEOUT", "30")),
                download_retries=int(env.get("SLACK_DOWNLOAD_RETRIES", "2")),
            ),
            google=GoogleSettings(
                credentials_json=env.get("GOOGLE_CREDENTIALS_JSON") or None,
                application_credentials_path=env.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
                drive_root_folder_id=_require(env, "GOOGLE_DRIVE_ROOT_FOLDER_ID"),
                shared_drive_id=env.get("GOOGLE_SHARED_DRIVE_ID") or None,
                sharing_domain=env.get("GOOGLE_SHARING_DOMAIN") or None,
                sheet=parse_sheet_target(sheet_raw, default_tab),
                user_sheets=_parse_user_sheets(env.get("USER_SHEET_TARGETS"), default_tab),
                http_timeout=int(env.get("GOOGLE_HTTP_TIMEOUT", "30")),
                read_retries=int(env.get("GOOGLE_READ_RETRIES", "2")),
            ),
            ledger=LedgerSettings(
                request_id_prefix=env.get("REQUEST_ID_PREFIX", "EXP"),
                currency=env.get("EXPENSE_CURRENCY", "JPY"),
                receipt_instructions_template=env.get("RECEIPT_DM_TEMPLATE", DEFAULT_RECEIPT_TEMPLATE),
                max_filename_title_length=int(env.get("MAX_FILENAME_TITLE_LENGTH", "20")),
                cache_policy=env.get("CACHE_POLICY", "none").lower(),
                cache_max_entries=int(env.get("CACHE_MAX_ENTRIES", "1024")),
                cache_ttl_seconds=float(env.get("CACHE_TTL_SECONDS", "3600")),
                completion_requires_approval=_flag(env.get("COMPLETION_REQUIRES_APPROVAL")),
                status_forward_only=_flag(env.get("STATUS_FORWARD_ONLY")),
            ),
        )
    except (ValueError, ValidationError) as e:
        # int()/float() failures and pydantic errors both land here
        raise ConfigError(f"Invalid configuration: {e}") from e
