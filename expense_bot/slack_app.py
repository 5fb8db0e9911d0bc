# expense_bot/slack_app.py
"""
Slack Bolt wiring: each listener acks, turns the Slack payload into an engine call and
logs failures. Listeners are plain functions so they can be exercised without Bolt.
"""

from typing import Any, Dict, Optional

from slack_bolt import App
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from expense_bot import monitoring
from expense_bot.config import AppConfig
from expense_bot.engine import LedgerReconciliationEngine
from expense_bot.errors import SubmissionValidationError, error_code_for
from expense_bot.schemas import FileArrivalEvent, ReactionEvent
from expense_bot.views import build_expense_modal

SUBMISSION_PARSE_FAILED_TEXT = "Something went wrong while processing your request. Please try again."
SUBMISSION_SAVE_FAILED_TEXT = "Your request could not be saved. Please contact an administrator."
COMPLETE_FAILED_TEXT = "Something went wrong while completing the request."


def _dm(client: WebClient, user_id: str, text: str) -> None:
    try:
        client.chat_postMessage(channel=user_id, text=text)
    except SlackApiError:
        monitoring.logger.exception("Failed to DM user", extra={"user_id": user_id})


def open_expense_modal(engine: LedgerReconciliationEngine, ack, body: Dict[str, Any], client: WebClient):
    ack()
    user_id = body["user"]["id"]
    user_name = engine.slack.lookup_display_name(user_id, fallback=body["user"].get("username"))
    try:
        client.views_open(trigger_id=body["trigger_id"], view=build_expense_modal(engine.config, user_name))
    except SlackApiError:
        monitoring.logger.exception("Failed to open expense modal", extra={"user_id": user_id})


def handle_view_submission(engine: LedgerReconciliationEngine, ack, body: Dict[str, Any],
                           view: Dict[str, Any], client: WebClient):
    user_id = body["user"]["id"]
    try:
        parsed = engine.parse_submission(view["state"]["values"])
    except SubmissionValidationError as e:
        monitoring.inc_event("submission", "invalid")
        ack(response_action="errors", errors=e.errors)
        return
    except (KeyError, TypeError):
        ack()
        monitoring.logger.exception("Failed to parse submission", extra={"user_id": user_id})
        _dm(client, user_id, SUBMISSION_PARSE_FAILED_TEXT)
        return

    ack()
    try:
        result = engine.handle_submission(user_id, parsed)
    except Exception as e:
        monitoring.inc_event("submission", "error")
        monitoring.logger.exception(
            "Failed to handle expense submission",
            extra={"user_id": user_id, "error_code": error_code_for(e)},
        )
        _dm(client, user_id, SUBMISSION_SAVE_FAILED_TEXT)
        return
    monitoring.logger.info("Submission handled", extra={"request_id": result.request_id, "user_id": user_id})


def _is_receipt_candidate(event: Dict[str, Any]) -> bool:
    subtype = event.get("subtype")
    if subtype and subtype != "file_share":
        return False
    if event.get("user") is None or event.get("bot_id"):
        return False
    return bool(event.get("files"))


def handle_message_event(engine: LedgerReconciliationEngine, event: Dict[str, Any]):
    if not _is_receipt_candidate(event):
        return
    arrival = FileArrivalEvent(
        user=event["user"],
        channel=event.get("channel", ""),
        ts=event.get("ts", ""),
        thread_ts=event.get("thread_ts"),
        files=event["files"],
        text=event.get("text"),
    )
    try:
        engine.handle_receipt_message(arrival)
    except Exception as e:
        monitoring.inc_event("receipt", "error")
        monitoring.logger.exception(
            "Failed to process receipt upload",
            extra={"thread_ts": arrival.thread_ts, "error_code": error_code_for(e)},
        )


def handle_reaction_added(engine: LedgerReconciliationEngine, event: Dict[str, Any]):
    item = event.get("item") or {}
    if item.get("type", "message") != "message" or not item.get("ts"):
        return
    reaction = ReactionEvent(
        user=event.get("user", ""),
        reaction=event.get("reaction", ""),
        channel=item.get("channel", ""),
        ts=item["ts"],
    )
    try:
        engine.handle_reaction(reaction)
    except Exception as e:
        monitoring.inc_event("reaction", "error")
        monitoring.logger.exception(
            "Failed to apply reaction",
            extra={"thread_ts": reaction.ts, "reaction": reaction.reaction, "error_code": error_code_for(e)},
        )


def handle_complete_command(engine: LedgerReconciliationEngine, ack, command: Dict[str, Any], respond):
    ack()
    try:
        message = engine.handle_complete_command(command.get("text"), command.get("user_id"))
    except Exception as e:
        monitoring.inc_event("complete", "error")
        monitoring.logger.exception(
            "Failed to complete expense",
            extra={"text": command.get("text"), "error_code": error_code_for(e)},
        )
        respond(COMPLETE_FAILED_TEXT)
        return
    respond(message)


def register_listeners(bolt_app: App, engine: LedgerReconciliationEngine) -> App:
    slack_cfg = engine.config.slack

    @bolt_app.shortcut(slack_cfg.shortcut_callback_id)
    def _shortcut(ack, body, client):
        open_expense_modal(engine, ack, body, client)

    @bolt_app.view(slack_cfg.modal_callback_id)
    def _view_submission(ack, body, view, client):
        handle_view_submission(engine, ack, body, view, client)

    @bolt_app.event("message")
    def _message(event):
        handle_message_event(engine, event)

    @bolt_app.event("reaction_added")
    def _reaction_added(event):
        handle_reaction_added(engine, event)

    @bolt_app.command(slack_cfg.complete_command)
    def _complete(ack, command, respond):
        handle_complete_command(engine, ack, command, respond)

    return bolt_app


def create_bolt_app(config: AppConfig, client: Optional[WebClient] = None,
                    token_verification_enabled: bool = True) -> App:
    """Bolt app for either HTTP mode (signing secret required) or Socket Mode."""
    return App(
        token=config.slack.bot_token,
        signing_secret=config.slack.signing_secret or "",
        client=client,
        token_verification_enabled=token_verification_enabled,
    )
