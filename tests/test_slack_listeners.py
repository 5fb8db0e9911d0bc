# tests/test_slack_listeners.py
from expense_bot.schemas import RequestStatus
from expense_bot.slack_app import (
    COMPLETE_FAILED_TEXT,
    SUBMISSION_SAVE_FAILED_TEXT,
    create_bolt_app,
    handle_complete_command,
    handle_message_event,
    handle_reaction_added,
    handle_view_submission,
    open_expense_modal,
    register_listeners,
)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))


def view_state(title="Lunch", amount="3500", usage_date="2025-09-12"):
    return {"state": {"values": {
        "expense_title_block": {"expense_title": {"value": title}},
        "amount_block": {"amount": {"value": amount}},
        "usage_date_block": {"usage_date": {"value": usage_date}},
        "remarks_block": {"remarks": {"value": None}},
    }}}


BODY = {"user": {"id": "U_APPLICANT"}, "trigger_id": "trigger-1"}


def test_shortcut_opens_modal_with_applicant_name(engine, web):
    ack = Recorder()
    open_expense_modal(engine, ack, BODY, web)
    assert len(ack.calls) == 1
    opened = web.views_opened[0]
    assert opened["trigger_id"] == "trigger-1"
    assert opened["view"]["callback_id"] == "expense_request_view"
    assert "Taro" in opened["view"]["blocks"][0]["text"]["text"]


def test_view_submission_validation_errors_are_acked(engine, web, sheets):
    ack = Recorder()
    handle_view_submission(engine, ack, BODY, view_state(amount="-5", usage_date="bad"), web)
    (_, kwargs), = ack.calls
    assert kwargs["response_action"] == "errors"
    assert set(kwargs["errors"]) == {"amount_block", "usage_date_block"}
    assert web.messages == []


def test_view_submission_records_request(engine, web, sheets):
    ack = Recorder()
    handle_view_submission(engine, ack, BODY, view_state(), web)
    assert ack.calls == [((), {})]
    assert sheets.row("sheet-1", "Requests", 2)["title"] == "Lunch"


def test_view_submission_failure_dms_applicant(engine, web):
    web.fail_channels.add("C_FINANCE")
    handle_view_submission(engine, Recorder(), BODY, view_state(), web)
    assert web.messages_to("U_APPLICANT")[-1]["text"] == SUBMISSION_SAVE_FAILED_TEXT


def test_message_filtering(engine, monkeypatch):
    seen = Recorder()
    monkeypatch.setattr(engine, "handle_receipt_message", seen)
    files = [{"id": "F1", "url_private_download": "https://files/F1"}]

    handle_message_event(engine, {"user": "U1", "channel": "C", "ts": "2.2", "files": files, "bot_id": "B1"})
    handle_message_event(engine, {"user": "U1", "channel": "C", "ts": "2.2", "files": files, "subtype": "message_changed"})
    handle_message_event(engine, {"user": "U1", "channel": "C", "ts": "2.2"})
    handle_message_event(engine, {"channel": "C", "ts": "2.2", "files": files})
    assert seen.calls == []

    handle_message_event(engine, {"user": "U1", "channel": "C", "ts": "2.2", "thread_ts": "1.1",
                                  "files": files, "subtype": "file_share"})
    (args, _), = seen.calls
    assert args[0].thread_ts == "1.1"
    assert args[0].files[0].id == "F1"


def test_message_handler_errors_are_logged_not_raised(engine, monkeypatch):
    def boom(event):
        raise RuntimeError("sheets down")
    monkeypatch.setattr(engine, "handle_receipt_message", boom)
    handle_message_event(engine, {"user": "U1", "channel": "C", "ts": "2.2", "thread_ts": "1.1",
                                  "files": [{"id": "F1"}]})


def test_reaction_added_maps_item(engine, monkeypatch):
    seen = Recorder()
    monkeypatch.setattr(engine, "handle_reaction", seen)
    handle_reaction_added(engine, {"user": "U9", "reaction": "x",
                                   "item": {"type": "message", "channel": "C_FINANCE", "ts": "1.1"}})
    handle_reaction_added(engine, {"user": "U9", "reaction": "x", "item": {"type": "file", "file": "F1"}})
    (args, _), = seen.calls
    assert args[0].ts == "1.1"
    assert args[0].reaction == "x"


def test_complete_command_responds(engine, web):
    result = engine.handle_submission("U_APPLICANT", engine.parse_submission(view_state()["state"]["values"]))
    ack, respond = Recorder(), Recorder()
    handle_complete_command(engine, ack, {"text": result.request_id, "user_id": "U_ACC"}, respond)
    assert len(ack.calls) == 1
    assert respond.calls[0][0][0].endswith("marked as completed.")
    assert engine.cache.peek(result.thread_id).status is RequestStatus.COMPLETED


def test_complete_command_failure_responds_with_error(engine, monkeypatch):
    def boom(text, user_id):
        raise RuntimeError("sheets down")
    monkeypatch.setattr(engine, "handle_complete_command", boom)
    respond = Recorder()
    handle_complete_command(engine, Recorder(), {"text": "EXP-1"}, respond)
    assert respond.calls[0][0][0] == COMPLETE_FAILED_TEXT


def test_register_listeners_on_bolt_app(config, engine):
    bolt_app = create_bolt_app(config, token_verification_enabled=False)
    assert register_listeners(bolt_app, engine) is bolt_app


def test_shortcut_falls_back_to_username(engine, web):
    body = {"user": {"id": "U404", "username": "jiro"}, "trigger_id": "trigger-2"}
    open_expense_modal(engine, Recorder(), body, web)
    assert "*jiro*" in web.views_opened[0]["view"]["blocks"][0]["text"]["text"]
