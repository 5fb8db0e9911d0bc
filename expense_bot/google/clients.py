# expense_bot/google/clients.py
import json
from typing import Tuple

import google.auth
import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.http import HttpRequest

from expense_bot.config import GoogleSettings
from expense_bot.errors import ConfigError

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/spreadsheets",
]


def load_credentials(settings: GoogleSettings):
    """
    Service-account credentials from GOOGLE_CREDENTIALS_JSON, else the key file at
    GOOGLE_APPLICATION_CREDENTIALS, else Application Default Credentials.
    """
    if settings.credentials_json:
        try:
            info = json.loads(settings.credentials_json)
        except json.JSONDecodeError as e:
            raise ConfigError(f"GOOGLE_CREDENTIALS_JSON is not valid JSON: {e}") from e
        return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
    if settings.application_credentials_path:
        return service_account.Credentials.from_service_account_file(
            settings.application_credentials_path, scopes=SCOPES
        )
    credentials, _project = google.auth.default(scopes=SCOPES)
    return credentials


def _authorized_http(credentials, timeout: int) -> AuthorizedHttp:
    # every outbound Google call is bounded by `timeout` seconds
    return AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))


def _request_builder(credentials, timeout: int):
    # httplib2.Http is not thread-safe and listeners run on worker threads,
    # so each request gets its own transport.
    def build_request(_http, *args, **kwargs):
        return HttpRequest(_authorized_http(credentials, timeout), *args, **kwargs)
    return build_request


def build_google_services(settings: GoogleSettings) -> Tuple[object, object]:
    """Return (sheets_v4, drive_v3) discovery clients."""
    credentials = load_credentials(settings)
    services = []
    for api, version in (("sheets", "v4"), ("drive", "v3")):
        services.append(build(
            api, version,
            http=_authorized_http(credentials, settings.http_timeout),
            requestBuilder=_request_builder(credentials, settings.http_timeout),
            cache_discovery=False,
        ))
    sheets, drive = services
    return sheets, drive
