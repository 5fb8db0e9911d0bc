# expense_bot/engine.py
"""
Ledger Reconciliation Engine.

Applies inbound Slack events (form submission, receipt upload, reaction, completion
command) to Request Records: resolves the record through the cache and ledger, archives
receipts, writes column-scoped updates back, refreshes the cache and posts notifications.

Safe to call from several listener threads at once for different records. Updates to the
same row are serialized inside LedgerStore.update and the status is resolved against the
freshly read row, so with STATUS_FORWARD_ONLY a stale view can never move a request backwards.
"""

from functools import partial
from typing import Any, Mapping, Optional

from expense_bot import monitoring
from expense_bot.cache import RequestCache
from expense_bot.config import AppConfig, SheetTarget
from expense_bot.errors import ChatPlatformError
from expense_bot.formatting import format_amount, generate_request_id, now_in_timezone
from expense_bot.google.drive import ReceiptArchiver
from expense_bot.google.sheets import LedgerStore
from expense_bot.lifecycle import TARGET_STATUS, Trigger, can_apply, resolve_transition
from expense_bot.schemas import (
    FileArrivalEvent,
    ParsedSubmission,
    ReactionEvent,
    ReceiptMeta,
    RecordUpdate,
    RequestRecord,
    RequestStatus,
    SubmissionResult,
)
from expense_bot.slack_gateway import SlackGateway
from expense_bot.submission import parse_view_state

MAX_REQUEST_ID_ATTEMPTS = 5
DEFAULT_MIME_TYPE = "application/octet-stream"

THREAD_ACK_TEXT = "Request received. Please attach your receipt in this thread."
APPROVED_TEXT = "Approved."
REJECTED_TEXT = "Rejected. Please reply in this thread with the reason."


class LedgerReconciliationEngine:
    def __init__(self, config: AppConfig, ledger: LedgerStore, archiver: ReceiptArchiver,
                 slack: SlackGateway, cache: Optional[RequestCache] = None):
        self.config = config
        self.ledger = ledger
        self.archiver = archiver
        self.slack = slack
        self.cache = cache or RequestCache(
            ledger.find_by_thread,
            policy=config.ledger.cache_policy,
            max_entries=config.ledger.cache_max_entries,
            ttl_seconds=config.ledger.cache_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _now(self) -> str:
        return now_in_timezone(self.config.timezone)

    def _notify(self, channel: str, text: str, thread_ts: Optional[str] = None) -> None:
        """Follow-up notifications are best-effort: the ledger write already happened."""
        try:
            self.slack.post_message(channel, text, thread_ts=thread_ts)
        except ChatPlatformError:
            monitoring.logger.exception(
                "Failed to post notification",
                extra={"channel": channel, "thread_ts": thread_ts},
            )

    def _refresh_cache(self, record: RequestRecord) -> Optional[RequestRecord]:
        """Read-after-write: pick up canonical values from the ledger."""
        refreshed = self.ledger.find_by_request_id(record.request_id)
        if refreshed is None:
            self.cache.invalidate(record.thread_id)
            return None
        self.cache.put(refreshed.thread_id, refreshed)
        return refreshed

    def _allocate_request_id(self) -> str:
        prefix = self.config.ledger.request_id_prefix
        request_id = generate_request_id(prefix, self.config.timezone)
        for _ in range(MAX_REQUEST_ID_ATTEMPTS - 1):
            if self.ledger.find_by_request_id(request_id) is None:
                break
            monitoring.logger.warning("Request id collision; regenerating", extra={"request_id": request_id})
            request_id = generate_request_id(prefix, self.config.timezone)
        return request_id

    # ------------------------------------------------------------------
    # sheet targets
    # ------------------------------------------------------------------
    def resolve_sheet_target(self, user_id: str) -> SheetTarget:
        return self.config.google.user_sheets.get(user_id, self.config.google.sheet)

    def resolve_update_target(self, record: RequestRecord) -> SheetTarget:
        """
        Target for writing back to an existing record. Records written under an older
        configuration keep working: a matching spreadsheet keeps its gid and only the tab is
        overridden; an unknown spreadsheet is addressed by the record's own ids.
        """
        candidates = [self.resolve_sheet_target(record.applicant_id), *self.config.lookup_targets()]
        for configured in candidates:
            if (configured.spreadsheet_id, configured.tab_name) == (record.spreadsheet_id, record.tab_name):
                return configured
        for configured in candidates:
            if configured.spreadsheet_id == record.spreadsheet_id:
                return configured.model_copy(update={"tab_name": record.tab_name})
        return SheetTarget(spreadsheet_id=record.spreadsheet_id, tab_name=record.tab_name)

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def get_request_by_thread(self, thread_id: str) -> Optional[RequestRecord]:
        return self.cache.get(thread_id)

    def get_request_by_id(self, request_id: str) -> Optional[RequestRecord]:
        # the cache is keyed by thread only
        return self.ledger.find_by_request_id(request_id)

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------
    def parse_submission(self, values: Mapping[str, Any]) -> ParsedSubmission:
        return parse_view_state(values)

    def _request_message(self, request_id: str, user_id: str, applicant_name: str,
                         submission: ParsedSubmission) -> str:
        lines = [
            f"*{request_id}* Expense reimbursement request",
            f"• Applicant: <@{user_id}> ({applicant_name})",
            f"• Expense: {submission.title}",
            f"• Amount: {format_amount(submission.amount)} {self.config.ledger.currency}",
            f"• Date of use: {submission.usage_date.isoformat()}",
        ]
        if submission.remarks:
            lines.append(f"• Remarks: {submission.remarks}")
        return "\n".join(lines)

    def handle_submission(self, user_id: str, submission: ParsedSubmission) -> SubmissionResult:
        applicant_name = self.slack.lookup_display_name(user_id)
        request_id = self._allocate_request_id()
        target = self.resolve_sheet_target(user_id)
        currency = self.config.ledger.currency

        posted = self.slack.post_message(
            self.config.slack.finance_channel_id,
            self._request_message(request_id, user_id, applicant_name, submission),
        )
        thread_id, channel_id = posted["ts"], posted["channel"]

        now = self._now()
        record = self.ledger.append(
            RequestRecord(
                request_id=request_id,
                thread_id=thread_id,
                channel_id=channel_id,
                applicant_id=user_id,
                applicant_name=applicant_name,
                title=submission.title,
                amount=submission.amount,
                currency=currency,
                usage_date=submission.usage_date.isoformat(),
                remarks=submission.remarks,
                status=RequestStatus.PENDING,
                spreadsheet_id=target.spreadsheet_id,
                tab_name=target.tab_name,
                created_at=now,
                updated_at=now,
            ),
            target,
        )
        self.cache.put(thread_id, record)
        monitoring.logger.info(
            "Expense request recorded",
            extra={"request_id": request_id, "thread_id": thread_id, "row_number": record.row_number},
        )

        self._notify(channel_id, THREAD_ACK_TEXT, thread_ts=thread_id)
        permalink = self.slack.get_permalink(channel_id, thread_id)
        instruction = self.config.ledger.receipt_instructions_template.replace(
            "{threadLink}", permalink or "the request thread"
        )
        self._notify(user_id, instruction)
        self._notify(
            self.config.slack.accounting_channel_id,
            f"New expense request: *{request_id}* - <@{user_id}> requested "
            f"{format_amount(submission.amount)} {currency}.",
        )
        monitoring.inc_event("submission", "success")

        return SubmissionResult(
            request_id=request_id,
            thread_id=thread_id,
            channel_id=channel_id,
            row_url=record.row_url or None,
            record=record,
        )

    # ------------------------------------------------------------------
    # receipts
    # ------------------------------------------------------------------
    def handle_receipt_message(self, event: FileArrivalEvent) -> Optional[RequestRecord]:
        """Archive the first file posted in a request thread. Returns the refreshed record."""
        if not event.thread_ts or not event.files:
            return None

        request = self.get_request_by_thread(event.thread_ts)
        if request is None:
            monitoring.logger.warning("No matching expense request for receipt upload",
                                      extra={"thread_ts": event.thread_ts})
            monitoring.inc_event("receipt", "not_found")
            return None

        file = event.files[0]
        if not file.url_private_download:
            monitoring.logger.warning("File does not contain a downloadable URL", extra={"file_id": file.id})
            monitoring.inc_event("receipt", "ignored")
            return None

        data = self.slack.download_file(file.url_private_download)
        mime_type = file.mimetype or DEFAULT_MIME_TYPE
        receipt = self.archiver.upload(data, mime_type, ReceiptMeta(
            request_id=request.request_id,
            usage_date=request.usage_day,
            applicant_name=request.applicant_name,
            amount=request.amount,
            currency=request.currency,
            summary=request.title,
            original_filename=file.name,
        ))

        written = self.ledger.update(
            self.resolve_update_target(request),
            request.row_number,
            RecordUpdate(
                folder_id=receipt.folder_id,
                file_name=receipt.name,
                file_link=receipt.link or "",
                file_id=receipt.file_id,
                updated_at=self._now(),
            ),
            resolve_status=partial(resolve_transition, trigger=Trigger.RECEIPT,
                                   forward_only=self.config.ledger.status_forward_only),
        )
        if written.status is not RequestStatus.RECEIVED:
            monitoring.logger.info(
                "Receipt archived without status change",
                extra={"request_id": request.request_id, "status": written.status.value},
            )

        sheet_link = written.row_url
        drive_link = receipt.link or "Drive"
        self._notify(
            request.channel_id,
            f"Receipt saved. Drive: <{drive_link}|{receipt.name}> / Sheet: <{sheet_link}|row link>",
            thread_ts=request.thread_id,
        )
        self._notify(
            self.config.slack.accounting_channel_id,
            f"Receipt uploaded: *{request.request_id}* (<{sheet_link}|sheet>)",
        )
        monitoring.inc_event("receipt", "success")
        return self._refresh_cache(written)

    # ------------------------------------------------------------------
    # reactions
    # ------------------------------------------------------------------
    def handle_reaction(self, event: ReactionEvent) -> Optional[RequestRecord]:
        slack_cfg = self.config.slack
        if event.reaction == slack_cfg.approve_reaction:
            trigger = Trigger.APPROVE
        elif event.reaction == slack_cfg.reject_reaction:
            trigger = Trigger.REJECT
        else:
            return None

        request = self.get_request_by_thread(event.ts)
        if request is None:
            monitoring.logger.warning("Reaction received but request not found", extra={"thread_ts": event.ts})
            monitoring.inc_event(trigger.value, "not_found")
            return None

        forward_only = self.config.ledger.status_forward_only
        if not can_apply(request.status, trigger, forward_only=forward_only):
            monitoring.logger.info(
                "Reaction ignored for request in a final state",
                extra={"request_id": request.request_id, "status": request.status.value},
            )
            monitoring.inc_event(trigger.value, "ignored")
            return None

        written = self.ledger.update(
            self.resolve_update_target(request),
            request.row_number,
            RecordUpdate(updated_at=self._now()),
            resolve_status=partial(resolve_transition, trigger=trigger, forward_only=forward_only),
        )
        if written.status is not TARGET_STATUS[trigger]:
            # forward-only and completed concurrently; the row lock kept the status as is
            monitoring.inc_event(trigger.value, "ignored")
            return self._refresh_cache(written)

        approved = trigger is Trigger.APPROVE
        sheet_link = written.row_url
        self._notify(
            request.channel_id,
            f"{APPROVED_TEXT if approved else REJECTED_TEXT} (<{sheet_link}|sheet>)",
            thread_ts=request.thread_id,
        )
        self._notify(
            slack_cfg.accounting_channel_id,
            f"{'Approve' if approved else 'Reject'} reaction: *{request.request_id}* (<{sheet_link}|sheet>)",
        )
        monitoring.inc_event(trigger.value, "success")
        return self._refresh_cache(written)

    # ------------------------------------------------------------------
    # completion
    # ------------------------------------------------------------------
    def handle_complete_command(self, text: Optional[str], user_id: Optional[str] = None) -> str:
        """Returns the reply shown to the user who ran the command."""
        request_id = (text or "").strip()
        command = self.config.slack.complete_command
        if not request_id:
            return f"Please specify a request id (e.g. {command} EXP-20250925-ABCD)"

        record = self.get_request_by_id(request_id)
        if record is None:
            monitoring.inc_event("complete", "not_found")
            return f"No request found for id {request_id}."

        requires_approval = self.config.ledger.completion_requires_approval
        if record.status is RequestStatus.COMPLETED:
            monitoring.inc_event("complete", "ignored")
            return f"Request {request_id} is already completed."
        if not can_apply(record.status, Trigger.COMPLETE, requires_approval):
            monitoring.inc_event("complete", "ignored")
            return f"Request {request_id} must be approved before it can be completed (current: {record.status.value})."

        updated_at = self._now()
        written = self.ledger.update(
            self.resolve_update_target(record),
            record.row_number,
            RecordUpdate(updated_at=updated_at),
            resolve_status=partial(
                resolve_transition, trigger=Trigger.COMPLETE,
                completion_requires_approval=requires_approval,
            ),
        )
        if written.status is not RequestStatus.COMPLETED:
            # status changed under us (e.g. approval withdrawn); nothing was completed
            self.cache.put(written.thread_id, written)
            monitoring.inc_event("complete", "ignored")
            return f"Request {request_id} could not be completed (current: {written.status.value})."

        sheet_link = written.row_url
        self._notify(record.channel_id, f"Reimbursement completed. (<{sheet_link}|sheet>)",
                     thread_ts=record.thread_id)
        self._notify(
            record.applicant_id,
            f"Your expense reimbursement ({record.request_id}) has been completed. Details: <{sheet_link}|sheet>",
        )
        self._notify(
            self.config.slack.accounting_channel_id,
            f"Marked complete: *{record.request_id}* (<{sheet_link}|sheet>)",
        )

        # no remote refresh: the written row is the new state
        self.cache.put(record.thread_id, record.model_copy(update={
            "status": RequestStatus.COMPLETED,
            "updated_at": updated_at,
        }))
        monitoring.logger.info("Expense request completed",
                               extra={"request_id": record.request_id, "completed_by": user_id})
        monitoring.inc_event("complete", "success")
        return f"Request {record.request_id} marked as completed."
