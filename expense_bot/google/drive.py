# expense_bot/google/drive.py
"""
Receipt archive on Google Drive.

Layout: <root>/<yyyy>/<MM>/<yyyyMMdd>_<applicant>_<amount><currency>_<summary><ext>

Folder creation is list-then-create, which the Drive API does not make atomic. Calls for the
same (parent, name) are serialized through a keyed lock so one process never creates the same
folder twice. Separate processes can still race; see DESIGN.md.
"""

import io
import json
import re
from typing import Any, Dict, Optional

from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from expense_bot import monitoring
from expense_bot.formatting import format_amount
from expense_bot.locks import KeyedLocks
from expense_bot.schemas import ReceiptMeta, UploadedReceipt

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/heic": ".heic",
    "application/pdf": ".pdf",
    "image/gif": ".gif",
}

# Letters, digits, CJK ideographs, hiragana, katakana, ー々〆〤, whitespace, _ and -
_SUMMARY_DISALLOWED = re.compile(
    r"[^a-zA-Z0-9一-龯ぁ-ゔァ-ヴー々〆〤\s_-]+"
)
_EXTENSION_RE = re.compile(r"\.([^.]+)$")

# Drive answers these when the permission already exists or the parent grants broader access
BENIGN_PERMISSION_REASONS = frozenset({
    "alreadyShared",
    "duplicate",
    "cannotChangeInheritedAccess",
})
BENIGN_PERMISSION_MESSAGES = ("less than the inherited access",)


def sanitize_summary(summary: str, max_length: int) -> str:
    cleaned = _SUMMARY_DISALLOWED.sub("", summary or "").strip()
    return cleaned[:max_length] or "expense"


def resolve_extension(mime_type: Optional[str], original_filename: Optional[str]) -> str:
    if original_filename:
        match = _EXTENSION_RE.search(original_filename)
        if match:
            return f".{match.group(1)}"
    return MIME_EXTENSIONS.get(mime_type or "", "")


def build_receipt_name(meta: ReceiptMeta, mime_type: Optional[str], max_title_length: int) -> str:
    summary = sanitize_summary(meta.summary, max_title_length)
    extension = resolve_extension(mime_type, meta.original_filename)
    return (
        f"{meta.usage_date.strftime('%Y%m%d')}_{meta.applicant_name}_"
        f"{format_amount(meta.amount)}{meta.currency}_{summary}{extension}"
    )


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def permission_error_reasons(error: HttpError) -> list:
    """Structured `reason` values from a Drive error payload (empty when absent)."""
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (ValueError, AttributeError):
        return []
    body = payload.get("error") if isinstance(payload, dict) else None
    errors = body.get("errors") or [] if isinstance(body, dict) else []
    return [e.get("reason") for e in errors if isinstance(e, dict) and e.get("reason")]


def is_benign_permission_error(error: Exception) -> bool:
    if not isinstance(error, HttpError):
        return False
    if any(reason in BENIGN_PERMISSION_REASONS for reason in permission_error_reasons(error)):
        return True
    message = str(getattr(error, "reason", "") or "")
    return any(fragment in message for fragment in BENIGN_PERMISSION_MESSAGES)


class FolderProvisioner:
    """Ensures <root>/<yyyy>/<MM> exists; creates missing segments exactly once per process."""

    def __init__(self, service, shared_drive_id: Optional[str] = None, read_retries: int = 2,
                 locks: Optional[KeyedLocks] = None):
        self._service = service
        self.shared_drive_id = shared_drive_id
        self.read_retries = read_retries
        self._locks = locks or KeyedLocks()

    def _drive_params(self) -> Dict[str, Any]:
        return {"supportsAllDrives": bool(self.shared_drive_id)}

    def _find_folder(self, parent_id: str, name: str) -> Optional[str]:
        query = " and ".join([
            f"name = '{_escape_query_value(name)}'",
            f"mimeType = '{FOLDER_MIME_TYPE}'",
            f"'{_escape_query_value(parent_id)}' in parents",
            "trashed = false",
        ])
        params: Dict[str, Any] = {
            "q": query,
            "fields": "files(id, name)",
            "includeItemsFromAllDrives": bool(self.shared_drive_id),
            **self._drive_params(),
        }
        if self.shared_drive_id:
            params.update(driveId=self.shared_drive_id, corpora="drive", spaces="drive")
        data = self._service.files().list(**params).execute(num_retries=self.read_retries)
        files = data.get("files") or []
        return files[0]["id"] if files else None

    def ensure_folder(self, parent_id: str, name: str) -> str:
        with self._locks.hold((parent_id, name)):
            existing = self._find_folder(parent_id, name)
            if existing:
                return existing
            created = self._service.files().create(
                body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
                fields="id",
                **self._drive_params(),
            ).execute()
            monitoring.inc_folder_created()
            monitoring.logger.info("Created Drive folder", extra={"parent_id": parent_id, "folder_name": name})
            return created["id"]

    def ensure_path(self, root_id: str, year: int, month: int) -> str:
        year_id = self.ensure_folder(root_id, f"{year:04d}")
        return self.ensure_folder(year_id, f"{month:02d}")


class ReceiptArchiver:
    def __init__(self, service, provisioner: FolderProvisioner, root_folder_id: str,
                 max_title_length: int = 20, sharing_domain: Optional[str] = None):
        self._service = service
        self.provisioner = provisioner
        self.root_folder_id = root_folder_id
        self.max_title_length = max_title_length
        self.sharing_domain = sharing_domain

    def upload(self, data: bytes, mime_type: str, meta: ReceiptMeta) -> UploadedReceipt:
        folder_id = self.provisioner.ensure_path(
            self.root_folder_id, meta.usage_date.year, meta.usage_date.month
        )
        name = build_receipt_name(meta, mime_type, self.max_title_length)
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        created = self._service.files().create(
            body={"name": name, "parents": [folder_id], "mimeType": mime_type},
            media_body=media,
            fields="id, name, webViewLink, webContentLink",
            supportsAllDrives=bool(self.provisioner.shared_drive_id),
        ).execute()
        monitoring.inc_receipt_archived()

        if self.sharing_domain:
            self.ensure_domain_access(created["id"])

        return UploadedReceipt(
            file_id=created["id"],
            view_link=created.get("webViewLink"),
            download_link=created.get("webContentLink"),
            name=created.get("name") or name,
            folder_id=folder_id,
        )

    def ensure_domain_access(self, file_id: str) -> None:
        try:
            self._service.permissions().create(
                fileId=file_id,
                body={
                    "type": "domain",
                    "role": "reader",
                    "domain": self.sharing_domain,
                    "allowFileDiscovery": False,
                },
                supportsAllDrives=bool(self.provisioner.shared_drive_id),
            ).execute()
        except HttpError as e:
            if not is_benign_permission_error(e):
                raise
            monitoring.logger.warning(
                "Skipping domain permission change due to inherited or duplicate access",
                extra={"file_id": file_id, "reasons": permission_error_reasons(e), "error_message": str(e.reason)},
            )
