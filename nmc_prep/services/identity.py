"""Google sign-in (OAuth 2.0 authorization code flow)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from nmc_prep.core.config import settings

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
SCOPES = "openid email profile"


class IdentityError(Exception):
    """The identity provider refused or could not be reached."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str]
    display_name: Optional[str]
    avatar_url: Optional[str]


class GoogleIdentityProvider:
    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET)

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            raise IdentityError("Google sign-in is not configured")
        params = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": SCOPES,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _http(self) -> httpx.Client:
        return self._client or httpx.Client(timeout=settings.OAUTH_TIMEOUT_SECONDS)

    def exchange_code(self, code: str) -> Identity:
        if not self.configured:
            raise IdentityError("Google sign-in is not configured")
        client = self._http()
        try:
            token = client.post(TOKEN_URL, data={
                "code": code,
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET.get_secret_value(),
                "redirect_uri": settings.GOOGLE_REDIRECT_URI,
                "grant_type": "authorization_code",
            })
            token.raise_for_status()
            access_token = token.json()["access_token"]
            info = client.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            info.raise_for_status()
            data = info.json()
            subject = data["sub"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning("Google sign-in failed: %s", e)
            raise IdentityError(f"Google sign-in failed: {e}") from e
        finally:
            if self._client is None:
                client.close()
        return Identity(
            user_id=f"google:{subject}",
            email=data.get("email"),
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
        )
