# expense_bot/views.py
from typing import Any, Dict

from expense_bot.config import AppConfig
from expense_bot.submission import (
    AMOUNT_ACTION,
    AMOUNT_BLOCK,
    REMARKS_ACTION,
    REMARKS_BLOCK,
    TITLE_ACTION,
    TITLE_BLOCK,
    USAGE_DATE_ACTION,
    USAGE_DATE_BLOCK,
)


def _plain(text: str) -> Dict[str, str]:
    return {"type": "plain_text", "text": text}


def _text_input(block_id: str, action_id: str, label: str, placeholder: str,
                optional: bool = False, multiline: bool = False) -> Dict[str, Any]:
    element: Dict[str, Any] = {
        "type": "plain_text_input",
        "action_id": action_id,
        "placeholder": _plain(placeholder),
    }
    if multiline:
        element["multiline"] = True
    block: Dict[str, Any] = {
        "type": "input",
        "block_id": block_id,
        "label": _plain(label),
        "element": element,
    }
    if optional:
        block["optional"] = True
    return block


def build_expense_modal(config: AppConfig, user_name: str) -> Dict[str, Any]:
    """Modal opened by the global shortcut; block ids match submission.parse_view_state."""
    return {
        "type": "modal",
        "callback_id": config.slack.modal_callback_id,
        "title": _plain("Expense reimbursement"),
        "submit": _plain("Submit"),
        "close": _plain("Cancel"),
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": f"Applicant: *{user_name}*"}},
            _text_input(TITLE_BLOCK, TITLE_ACTION, "Expense", "e.g. Client lunch meeting"),
            _text_input(AMOUNT_BLOCK, AMOUNT_ACTION, f"Amount ({config.ledger.currency})", "e.g. 5280"),
            _text_input(USAGE_DATE_BLOCK, USAGE_DATE_ACTION, "Date of use (YYYY-MM-DD)", "e.g. 2025-09-12"),
            _text_input(REMARKS_BLOCK, REMARKS_ACTION, "Remarks", "Anything the approver should know",
                        optional=True, multiline=True),
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": "After you submit, the bot will DM you a link to the request thread. "
                            "Upload the receipt *in that same thread*.",
                },
            },
        ],
    }
