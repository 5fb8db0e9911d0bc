# expense_bot/errors.py
from typing import Dict, Optional

# Error codes (surface in logs, metrics and the admin API)
E_VALIDATION = "E_VALIDATION"
E_NOT_FOUND = "E_NOT_FOUND"
E_CHAT = "E_CHAT"
E_DOWNLOAD = "E_DOWNLOAD"
E_REMOTE = "E_REMOTE"
E_CONFIG = "E_CONFIG"


class ExpenseBotError(Exception):
    """Base class for errors raised by the expense bot."""

    code = E_REMOTE

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigError(ExpenseBotError):
    code = E_CONFIG


class SubmissionValidationError(ExpenseBotError):
    """
    Raised when a form submission fails validation.
    `errors` maps the form block id to a user-facing message, one entry per invalid field.
    """

    code = E_VALIDATION

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Submission validation failed")
        self.errors = dict(errors)


class RecordNotFoundError(ExpenseBotError):
    code = E_NOT_FOUND


class RowNotFoundError(RecordNotFoundError):
    def __init__(self, spreadsheet_id: str, tab_name: str, row_number: int):
        super().__init__(f"Row {row_number} not found in sheet {spreadsheet_id} ({tab_name})")
        self.spreadsheet_id = spreadsheet_id
        self.tab_name = tab_name
        self.row_number = row_number


class ChatPlatformError(ExpenseBotError):
    code = E_CHAT


class FileDownloadError(ExpenseBotError):
    code = E_DOWNLOAD


def error_code_for(exc: BaseException) -> str:
    """Classify any exception into one of the error codes above."""
    if isinstance(exc, ExpenseBotError):
        return exc.code
    return E_REMOTE
