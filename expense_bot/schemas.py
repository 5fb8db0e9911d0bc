# expense_bot/schemas.py
import enum
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    RECEIVED = "received"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Labels written by earlier deployments of the bot; still accepted when reading rows
LEGACY_STATUS_LABELS = {
    "待機中": RequestStatus.PENDING,
    "受付済": RequestStatus.RECEIVED,
    "承認": RequestStatus.APPROVED,
    "却下": RequestStatus.REJECTED,
    "完了": RequestStatus.COMPLETED,
}


def parse_status(value: Optional[str]) -> RequestStatus:
    """Decode a stored status cell. Empty or unknown values fall back to PENDING."""
    if not value:
        return RequestStatus.PENDING
    text = value.strip()
    if text in LEGACY_STATUS_LABELS:
        return LEGACY_STATUS_LABELS[text]
    try:
        return RequestStatus(text.lower())
    except ValueError:
        return RequestStatus.PENDING


ARCHIVE_FIELDS = ("folder_id", "file_name", "file_link", "file_id")


class RequestRecord(BaseModel):
    """One ledger row: a single reimbursement request and its lifecycle state."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    thread_id: str
    channel_id: str
    applicant_id: str
    applicant_name: str = ""
    title: str = ""
    amount: float
    currency: str
    usage_date: str  # YYYY-MM-DD
    remarks: str = ""
    folder_id: Optional[str] = None
    file_name: Optional[str] = None
    file_link: Optional[str] = None
    file_id: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    row_url: str = ""
    spreadsheet_id: str
    tab_name: str
    row_number: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""

    @field_validator(*ARCHIVE_FIELDS, mode="before")
    @classmethod
    def empty_archive_field_is_none(cls, v):
        if v is None or (isinstance(v, str) and v.strip() == ""):
            return None
        return v

    @property
    def has_receipt(self) -> bool:
        return self.file_id is not None

    @property
    def usage_day(self) -> date:
        """usage_date as a date; tolerates the YYYY/MM/DD rendering Sheets may return."""
        return datetime.strptime(self.usage_date.strip().replace("/", "-"), "%Y-%m-%d").date()


class RecordUpdate(BaseModel):
    """Column-scoped partial update. Only fields that are set are written."""

    remarks: Optional[str] = None
    folder_id: Optional[str] = None
    file_name: Optional[str] = None
    file_link: Optional[str] = None
    file_id: Optional[str] = None
    status: Optional[RequestStatus] = None
    updated_at: Optional[str] = None


class ParsedSubmission(BaseModel):
    title: str
    amount: float
    usage_date: date
    remarks: str = ""


class SubmissionResult(BaseModel):
    request_id: str
    thread_id: str
    channel_id: str
    row_url: Optional[str] = None
    record: RequestRecord


class ReceiptMeta(BaseModel):
    request_id: str
    usage_date: date
    applicant_name: str
    amount: float
    currency: str
    summary: str
    original_filename: Optional[str] = None


class UploadedReceipt(BaseModel):
    file_id: str
    view_link: Optional[str] = None
    download_link: Optional[str] = None
    name: str
    folder_id: str

    @property
    def link(self) -> Optional[str]:
        return self.view_link or self.download_link


class SlackFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    mimetype: Optional[str] = None
    name: Optional[str] = None
    url_private_download: Optional[str] = None


class FileArrivalEvent(BaseModel):
    user: str
    channel: str
    ts: str
    thread_ts: Optional[str] = None
    files: List[SlackFile] = Field(default_factory=list)
    text: Optional[str] = None


class ReactionEvent(BaseModel):
    user: str
    reaction: str
    channel: str
    ts: str  # timestamp of the message that was reacted to
