# expense_bot/runtime.py
"""Wires configuration, Google/Slack clients and the engine into one process-wide runtime."""

from typing import Optional

from slack_bolt import App
from slack_sdk import WebClient

from expense_bot import monitoring
from expense_bot.cache import RequestCache
from expense_bot.config import AppConfig, load_config
from expense_bot.engine import LedgerReconciliationEngine
from expense_bot.google.clients import build_google_services
from expense_bot.google.drive import FolderProvisioner, ReceiptArchiver
from expense_bot.google.sheets import LedgerStore
from expense_bot.locks import KeyedLocks
from expense_bot.slack_app import create_bolt_app, register_listeners
from expense_bot.slack_gateway import SlackGateway


class Runtime:
    def __init__(self, config: AppConfig, engine: LedgerReconciliationEngine, bolt_app: App):
        self.config = config
        self.engine = engine
        self.bolt_app = bolt_app


def build_engine(config: AppConfig, sheets_service, drive_service, web_client: WebClient,
                 locks: Optional[KeyedLocks] = None) -> LedgerReconciliationEngine:
    locks = locks or KeyedLocks()
    google_cfg, ledger_cfg = config.google, config.ledger
    ledger = LedgerStore(
        sheets_service,
        targets=config.lookup_targets(),
        timezone=config.timezone,
        default_currency=ledger_cfg.currency,
        read_retries=google_cfg.read_retries,
        locks=locks,
    )
    cache = RequestCache(
        ledger.find_by_thread,
        policy=ledger_cfg.cache_policy,
        max_entries=ledger_cfg.cache_max_entries,
        ttl_seconds=ledger_cfg.cache_ttl_seconds,
    )
    provisioner = FolderProvisioner(
        drive_service,
        shared_drive_id=google_cfg.shared_drive_id,
        read_retries=google_cfg.read_retries,
        locks=locks,
    )
    archiver = ReceiptArchiver(
        drive_service,
        provisioner,
        root_folder_id=google_cfg.drive_root_folder_id,
        max_title_length=ledger_cfg.max_filename_title_length,
        sharing_domain=google_cfg.sharing_domain,
    )
    slack = SlackGateway(
        web_client,
        bot_token=config.slack.bot_token,
        timeout=config.slack.http_timeout,
        download_retries=config.slack.download_retries,
    )
    return LedgerReconciliationEngine(config, ledger, archiver, slack, cache=cache)


def build_runtime(config: Optional[AppConfig] = None) -> Runtime:
    config = config or load_config()
    sheets, drive = build_google_services(config.google)
    web_client = WebClient(token=config.slack.bot_token, timeout=config.slack.http_timeout)
    engine = build_engine(config, sheets, drive, web_client)
    bolt_app = register_listeners(create_bolt_app(config, client=web_client), engine)
    monitoring.logger.info(
        "Expense bot runtime ready",
        extra={
            "environment": config.environment,
            "sheet_targets": len(config.lookup_targets()),
            "cache_policy": config.ledger.cache_policy,
            "socket_mode": config.slack.socket_mode,
        },
    )
    return Runtime(config, engine, bolt_app)
