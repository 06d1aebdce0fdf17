"""
Calos Assistant — Gmail Authentication.

Per-user Gmail access for the email monitoring source. Each user runs the
manual OAuth flow once through /connectgmail; the resulting authorized-user
JSON is stored on their UserDB row and refreshed by google-auth when it
expires.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
]


def get_google_auth_url(credentials_path: str | None = None) -> tuple[str, InstalledAppFlow]:
    """Generate a Google OAuth2 authorization URL for manual flow.

    Returns (auth_url, flow): the user visits auth_url, authorizes,
    and pastes back the auth code.
    """
    if credentials_path is None:
        from calos.config import settings
        credentials_path = settings.GOOGLE_CREDENTIALS_PATH

    creds_path = Path(credentials_path)
    if not creds_path.exists():
        raise FileNotFoundError(
            f"Google credentials file not found at {creds_path}. "
            "Download it from the Google Cloud Console."
        )

    flow = InstalledAppFlow.from_client_secrets_file(
        str(creds_path), SCOPES,
        redirect_uri="urn:ietf:wg:oauth:2.0:oob",
    )
    auth_url, _ = flow.authorization_url(access_type="offline", prompt="consent")
    return auth_url, flow


def exchange_google_auth_code(flow: InstalledAppFlow, code: str) -> str:
    """Exchange an authorization code for credentials.

    Returns the token as a JSON string suitable for storing in UserDB.
    """
    flow.fetch_token(code=code)
    return flow.credentials.to_json()


def get_gmail_service_for_user(token_json: str) -> tuple[object, str | None]:
    """Build a Gmail API v1 service from stored user credentials.

    Returns (service, refreshed_token_json). The second item is None unless
    the token had to be refreshed, in which case the caller should persist it.
    """
    creds = Credentials.from_authorized_user_info(json.loads(token_json), SCOPES)
    refreshed = None
    if creds.expired and creds.refresh_token:
        creds.refresh(Request())
        refreshed = creds.to_json()
        logger.info("Gmail token refreshed")
    return build("gmail", "v1", credentials=creds, cache_discovery=False), refreshed
