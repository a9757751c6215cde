"""
Sign-in with Google or GitHub, and session lookup.

The OAuth authorization-code flow runs server side. A successful callback links
the provider account to a user (matched by email, so signing in with a second
provider links it to the same user), then issues an opaque session token.
Clients send it back as "Authorization: Bearer <token>" or a session_token cookie.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import (
    consume_verification_db,
    create_session_db,
    create_user_db,
    create_verification_db,
    ensure_personal_workspace_db,
    find_account_db,
    find_user_by_email_db,
    get_session_by_token_db,
    get_user_db,
    to_timestamp,
    upsert_account_db,
)
from integrations import HTTP_TIMEOUT, IntegrationError
from models import Session, User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.events.readonly",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.settings.readonly",
]

PROVIDERS = {
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scopes": ["openid", "email", "profile"] + GOOGLE_CALENDAR_SCOPES,
        # Consent every time so Google always returns a refresh token
        "extra_params": {"access_type": "offline", "prompt": "consent"},
    },
    "github": {
        "authorize_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scopes": ["read:user", "user:email"],
        "extra_params": {},
    },
}


def _credentials(provider: str) -> tuple[Optional[str], Optional[str]]:
    if provider == "google":
        return config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET
    return config.GITHUB_CLIENT_ID, config.GITHUB_CLIENT_SECRET


def _provider_or_404(provider: str) -> dict:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")
    client_id, client_secret = _credentials(provider)
    if not client_id or not client_secret:
        raise HTTPException(status_code=503, detail=f"{provider} sign-in is not configured")
    return PROVIDERS[provider]


def redirect_uri(provider: str) -> str:
    return f"{config.APP_URL.rstrip('/')}/api/auth/callback/{provider}"


def authorization_url(provider: str) -> str:
    """Build the provider's consent URL with a fresh single-use state."""
    settings = _provider_or_404(provider)
    client_id, _ = _credentials(provider)
    state = secrets.token_urlsafe(32)
    create_verification_db(f"oauth-state:{state}", provider)
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri(provider),
        "response_type": "code",
        "scope": " ".join(settings["scopes"]),
        "state": state,
        **settings["extra_params"],
    }
    return f"{settings['authorize_url']}?{urlencode(params)}"


async def _exchange_code(http: httpx.AsyncClient, provider: str, code: str) -> dict:
    settings = PROVIDERS[provider]
    client_id, client_secret = _credentials(provider)
    response = await http.post(
        settings["token_url"],
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri(provider),
            "grant_type": "authorization_code",
        },
        headers={"Accept": "application/json"},
    )
    response.raise_for_status()
    tokens = response.json()
    if "access_token" not in tokens:
        raise IntegrationError(f"{provider} did not return an access token")
    return tokens


async def _fetch_profile(http: httpx.AsyncClient, provider: str, access_token: str) -> dict:
    """Normalized profile: account_id, email, name, image."""
    settings = PROVIDERS[provider]
    headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
    response = await http.get(settings["userinfo_url"], headers=headers)
    response.raise_for_status()
    info = response.json()

    if provider == "google":
        return {
            "account_id": str(info["sub"]),
            # Unverified addresses must not link to an existing user
            "email": info.get("email") if info.get("email_verified") else None,
            "name": info.get("name"),
            "image": info.get("picture"),
        }

    email = info.get("email")
    if not email:
        # GitHub hides private emails from /user
        emails = await http.get(settings["emails_url"], headers=headers)
        emails.raise_for_status()
        primary = next((e for e in emails.json() if e.get("primary") and e.get("verified")), None)
        email = primary["email"] if primary else None
    return {
        "account_id": str(info["id"]),
        "email": email,
        "name": info.get("name") or info.get("login"),
        "image": info.get("avatar_url"),
    }


async def complete_sign_in(provider: str, code: str, state: str) -> tuple[Session, User]:
    """Finish the OAuth flow: verify state, exchange the code, link the account, open a session."""
    _provider_or_404(provider)
    if consume_verification_db(f"oauth-state:{state}") != provider:
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http:
            tokens = await _exchange_code(http, provider, code)
            profile = await _fetch_profile(http, provider, tokens["access_token"])
    except httpx.HTTPError as e:
        logger.warning("%s sign-in failed: %s", provider, e)
        raise IntegrationError(f"{provider} sign-in failed: {e}") from e

    user = None
    existing = find_account_db(provider, profile["account_id"])
    if existing:
        user = get_user_db(existing.user_id)
    if user is None and profile["email"]:
        user = find_user_by_email_db(profile["email"])
    if user is None:
        user = create_user_db(profile["name"], profile["email"], profile["image"])
        logger.info("Created user %s via %s", user.id, provider)

    expires_at = None
    if tokens.get("expires_in"):
        expires_at = to_timestamp(datetime.now(timezone.utc) + timedelta(seconds=int(tokens["expires_in"])))
    upsert_account_db(
        user.id,
        provider,
        profile["account_id"],
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
        access_token_expires_at=expires_at,
        scope=tokens.get("scope"),
    )
    ensure_personal_workspace_db(user.id)

    session = create_session_db(user.id, secrets.token_urlsafe(32), config.SESSION_TTL_DAYS)
    return session, user


def read_session_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session_token: Optional[str] = Cookie(default=None),
) -> Optional[str]:
    if credentials:
        return credentials.credentials
    return session_token


def get_current_user(token: Optional[str] = Depends(read_session_token)) -> User:
    """FastAPI dependency: the signed-in user, or 401."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not signed in",
            headers={"WWW-Authenticate": "Bearer"},
        )
    session = get_session_by_token_db(token)
    user = get_user_db(session.user_id) if session else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired or invalid",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
