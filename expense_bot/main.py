# expense_bot/main.py
"""
Process entry point.

Socket Mode when SOCKET_MODE is on and SLACK_APP_TOKEN is set; otherwise the FastAPI app is
served with uvicorn and Slack delivers to POST /slack/events.
"""

import os
import sys

from dotenv import load_dotenv
load_dotenv()

import uvicorn
from slack_bolt.adapter.socket_mode import SocketModeHandler

from expense_bot import monitoring
from expense_bot.config import load_config
from expense_bot.errors import ConfigError
from expense_bot.runtime import build_runtime


def main() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        monitoring.logger.error("Invalid configuration", extra={"error_message": str(e)})
        return 1

    if config.slack.socket_mode and config.slack.app_token:
        runtime = build_runtime(config)
        monitoring.logger.info("Expense bot starting in Socket Mode")
        SocketModeHandler(runtime.bolt_app, config.slack.app_token).start()
        return 0

    if not config.slack.signing_secret:
        monitoring.logger.error("SLACK_SIGNING_SECRET is required in HTTP mode")
        return 1

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    monitoring.logger.info("Expense bot starting in HTTP mode", extra={"host": host, "port": port})
    uvicorn.run("expense_bot.app:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
