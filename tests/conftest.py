# tests/conftest.py
"""
In-memory stand-ins for the Google discovery clients and the Slack WebClient.

They implement only the call shapes the bot uses:
- sheets: spreadsheets().values().get/append/update(...).execute(num_retries=...)
- drive:  files().list/create(...), permissions().create(...)
- slack:  chat_postMessage, chat_getPermalink, users_info, views_open
"""
import itertools
import json
import re
import threading
import time

import httplib2
import pytest
from googleapiclient.errors import HttpError
from slack_sdk.errors import SlackApiError

from expense_bot.config import load_config
from expense_bot.google.sheets import COLUMNS
from expense_bot.runtime import build_engine

_RANGE_RE = re.compile(r"^(?:'((?:[^']|'')*)'|([^!]+))!([A-Z]+)(\d*)(?::([A-Z]+)(\d*))?$")


def parse_range(a1: str):
    """'Tab'!A2:R2 -> ("Tab", 2); 'Tab'!A:R -> ("Tab", None)."""
    m = _RANGE_RE.match(a1)
    if not m:
        raise ValueError(f"unsupported range {a1!r}")
    tab = m.group(1).replace("''", "'") if m.group(1) is not None else m.group(2)
    row = int(m.group(4)) if m.group(4) else None
    return tab, row


class _Call:
    def __init__(self, fn):
        self._fn = fn

    def execute(self, num_retries=0):
        return self._fn()


# ---------------------------------------------------------------------------
# Sheets
# ---------------------------------------------------------------------------
class FakeValues:
    def __init__(self, service):
        self._svc = service

    def get(self, spreadsheetId, range):
        return _Call(lambda: self._svc._get(spreadsheetId, range))

    def append(self, spreadsheetId, range, valueInputOption, insertDataOption, body):
        return _Call(lambda: self._svc._append(spreadsheetId, range, valueInputOption, insertDataOption, body))

    def update(self, spreadsheetId, range, valueInputOption, body):
        return _Call(lambda: self._svc._update(spreadsheetId, range, valueInputOption, body))


class FakeSheetsService:
    def __init__(self):
        self.tabs = {}  # (spreadsheet_id, tab) -> list of rows, header first
        self.calls = []  # (op, spreadsheet_id, range, value_input_option)
        self.append_updated_range = None  # override the reported updatedRange
        self.read_delay = 0.0
        self._lock = threading.Lock()

    def spreadsheets(self):
        return self

    def values(self):
        return FakeValues(self)

    def rows(self, spreadsheet_id, tab):
        with self._lock:
            return self.tabs.setdefault((spreadsheet_id, tab), [list(COLUMNS)])

    def row(self, spreadsheet_id, tab, row_number):
        return dict(zip(COLUMNS, self.rows(spreadsheet_id, tab)[row_number - 1]))

    def _get(self, spreadsheet_id, a1):
        tab, row = parse_range(a1)
        rows = self.rows(spreadsheet_id, tab)
        if self.read_delay:
            time.sleep(self.read_delay)
        with self._lock:
            self.calls.append(("get", spreadsheet_id, a1, None))
            if row is None:
                selected = [list(r) for r in rows]
            elif row <= len(rows) and any(rows[row - 1]):
                selected = [list(rows[row - 1])]
            else:
                selected = []
        # the API trims trailing empty cells and omits "values" for empty ranges
        trimmed = []
        for r in selected:
            while r and r[-1] == "":
                r.pop()
            trimmed.append(r)
        return {"range": a1, "values": trimmed} if trimmed else {"range": a1}

    def _append(self, spreadsheet_id, a1, value_input_option, insert_data_option, body):
        tab, _ = parse_range(a1)
        rows = self.rows(spreadsheet_id, tab)
        with self._lock:
            self.calls.append(("append", spreadsheet_id, a1, value_input_option))
            for values in body["values"]:
                rows.append([str(v) for v in values])
            n = len(rows)
        updated = self.append_updated_range if self.append_updated_range is not None else f"{tab}!A{n}:R{n}"
        return {"spreadsheetId": spreadsheet_id, "updates": {"updatedRange": updated, "updatedRows": 1}}

    def _update(self, spreadsheet_id, a1, value_input_option, body):
        tab, row = parse_range(a1)
        rows = self.rows(spreadsheet_id, tab)
        with self._lock:
            self.calls.append(("update", spreadsheet_id, a1, value_input_option))
            while len(rows) < row:
                rows.append([])
            rows[row - 1] = [str(v) for v in body["values"][0]]
        return {"updatedRange": a1, "updatedRows": 1}


# ---------------------------------------------------------------------------
# Drive
# ---------------------------------------------------------------------------
_NAME_RE = re.compile(r"name = '((?:[^'\\]|\\.)*)'")
_PARENT_RE = re.compile(r"'((?:[^'\\]|\\.)*)' in parents")


def _unescape(value):
    return re.sub(r"\\(.)", r"\1", value)


def make_http_error(status, message, reasons=()):
    payload = {"error": {"code": status, "message": message,
                         "errors": [{"reason": r, "message": message} for r in reasons]}}
    return HttpError(httplib2.Response({"status": status}), json.dumps(payload).encode("utf-8"))


class FakeFiles:
    def __init__(self, service):
        self._svc = service

    def list(self, q, fields=None, **params):
        return _Call(lambda: self._svc._list(q, params))

    def create(self, body, media_body=None, fields=None, **params):
        return _Call(lambda: self._svc._create(body, media_body, params))


class FakePermissions:
    def __init__(self, service):
        self._svc = service

    def create(self, fileId, body, **params):
        return _Call(lambda: self._svc._permission(fileId, body))


class FakeDriveService:
    def __init__(self):
        self.items = {}  # id -> {"name", "parents", "mimeType", "content"}
        self.list_params = []
        self.permissions_granted = []
        self.permission_error = None
        self.list_delay = 0.0
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def files(self):
        return FakeFiles(self)

    def permissions(self):
        return FakePermissions(self)

    def children(self, parent_id, name=None):
        with self._lock:
            return [
                (item_id, item) for item_id, item in self.items.items()
                if parent_id in item["parents"] and (name is None or item["name"] == name)
            ]

    def _list(self, q, params):
        name = _unescape(_NAME_RE.search(q).group(1))
        parent = _unescape(_PARENT_RE.search(q).group(1))
        self.list_params.append(params)
        found = [
            {"id": item_id, "name": item["name"]}
            for item_id, item in self.children(parent, name)
            if item["mimeType"] == "application/vnd.google-apps.folder"
        ]
        if self.list_delay:
            time.sleep(self.list_delay)
        return {"files": found}

    def _create(self, body, media_body, params):
        content = media_body.getbytes(0, media_body.size()) if media_body is not None else None
        with self._lock:
            item_id = f"drive-{next(self._seq)}"
            self.items[item_id] = {
                "name": body["name"],
                "parents": list(body.get("parents") or []),
                "mimeType": body.get("mimeType"),
                "content": content,
            }
        return {
            "id": item_id,
            "name": body["name"],
            "webViewLink": f"https://drive.google.com/file/d/{item_id}/view",
            "webContentLink": f"https://drive.google.com/uc?id={item_id}",
        }

    def _permission(self, file_id, body):
        if self.permission_error is not None:
            raise self.permission_error
        self.permissions_granted.append((file_id, body))
        return {"id": "perm-1"}


# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------
class FakeWebClient:
    def __init__(self):
        self.messages = []
        self.views_opened = []
        self.fail_channels = set()
        self.users = {
            "U_APPLICANT": {"id": "U_APPLICANT", "profile": {"real_name": "Taro", "display_name": "taro"}},
        }
        self._ts = itertools.count(1)
        self._lock = threading.Lock()

    def chat_postMessage(self, channel, text, thread_ts=None, **kwargs):
        if channel in self.fail_channels:
            raise SlackApiError("chat.postMessage failed", {"ok": False, "error": "channel_not_found"})
        with self._lock:
            ts = f"1726000000.{next(self._ts):06d}"
            self.messages.append({"channel": channel, "text": text, "thread_ts": thread_ts, "ts": ts})
        return {"ok": True, "channel": channel, "ts": ts}

    def chat_getPermalink(self, channel, message_ts):
        return {"ok": True, "permalink": f"https://example.slack.com/archives/{channel}/p{message_ts.replace('.', '')}"}

    def users_info(self, user):
        if user not in self.users:
            raise SlackApiError("users.info failed", {"ok": False, "error": "user_not_found"})
        return {"ok": True, "user": self.users[user]}

    def views_open(self, trigger_id, view):
        self.views_opened.append({"trigger_id": trigger_id, "view": view})
        return {"ok": True}

    def messages_to(self, channel):
        return [m for m in self.messages if m["channel"] == channel]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
BASE_ENV = {
    "SLACK_BOT_TOKEN": "xoxb-test",
    "SLACK_SIGNING_SECRET": "signing-secret",
    "EXPENSE_CHANNEL_ID": "C_FINANCE",
    "ACCOUNTING_CHANNEL_ID": "C_ACCOUNTING",
    "GOOGLE_DRIVE_ROOT_FOLDER_ID": "root-folder",
    "SHEET_TARGET": json.dumps({"spreadsheetId": "sheet-1", "tabName": "Requests", "gid": 0}),
}

RECEIPT_BYTES = b"\x89PNG fake receipt"


@pytest.fixture
def env():
    return dict(BASE_ENV)


@pytest.fixture
def config(env):
    return load_config(env)


@pytest.fixture
def sheets():
    return FakeSheetsService()


@pytest.fixture
def drive():
    return FakeDriveService()


@pytest.fixture
def web():
    return FakeWebClient()


@pytest.fixture
def make_engine(sheets, drive, web, monkeypatch):
    def _make(cfg):
        engine = build_engine(cfg, sheets, drive, web)
        monkeypatch.setattr(engine.slack, "download_file", lambda url: RECEIPT_BYTES)
        return engine
    return _make


@pytest.fixture
def engine(make_engine, config):
    return make_engine(config)
