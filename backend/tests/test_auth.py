"""
Tests for auth.py - OAuth state, account linking and session lookup.
Provider HTTP calls go through httpx.MockTransport.
"""
import asyncio
import pytest
import sys
import os
from urllib.parse import parse_qs, urlparse

import httpx
from fastapi import HTTPException

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from auth import authorization_url, complete_sign_in, get_current_user
from database import (
    create_session_db,
    create_verification_db,
    get_accounts_db,
    get_personal_workspace_db,
    get_session_by_token_db,
)
from integrations import IntegrationError


@pytest.fixture
def providers(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "google-id")
    monkeypatch.setattr(config, "GOOGLE_CLIENT_SECRET", "google-secret")
    monkeypatch.setattr(config, "GITHUB_CLIENT_ID", "github-id")
    monkeypatch.setattr(config, "GITHUB_CLIENT_SECRET", "github-secret")
    monkeypatch.setattr(config, "APP_URL", "https://agenda.test")


@pytest.fixture
def provider_api(monkeypatch):
    """Serve canned provider responses; tests fill in the routes dict."""
    routes = {}
    real_client = httpx.AsyncClient

    def handler(request):
        return routes[(request.method, str(request.url).split("?")[0])]

    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs)
    )
    return routes


def github_routes(routes, email="Ada@Example.com"):
    routes[("POST", "https://github.com/login/oauth/access_token")] = httpx.Response(
        200, json={"access_token": "gho_token", "scope": "read:user,user:email"}
    )
    routes[("GET", "https://api.github.com/user")] = httpx.Response(
        200, json={"id": 7, "login": "ada", "name": None, "email": None, "avatar_url": "https://avatars.test/7"}
    )
    routes[("GET", "https://api.github.com/user/emails")] = httpx.Response(
        200, json=[
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": email, "primary": True, "verified": True},
        ]
    )


def google_routes(routes, email="ada@example.com", email_verified=True):
    routes[("POST", "https://oauth2.googleapis.com/token")] = httpx.Response(
        200, json={"access_token": "ya29", "refresh_token": "1//refresh", "expires_in": 3600}
    )
    routes[("GET", "https://openidconnect.googleapis.com/v1/userinfo")] = httpx.Response(
        200, json={"sub": "g-123", "email": email, "email_verified": email_verified,
                   "name": "Ada Lovelace", "picture": "https://pics.test/ada"}
    )


class TestAuthorizationUrl:
    """Tests for building the provider consent URL."""

    def test_google_url(self, test_db, providers):
        """The Google URL asks for offline access and carries a stored state."""
        url = urlparse(authorization_url("google"))
        params = parse_qs(url.query)

        assert url.netloc == "accounts.google.com"
        assert params["client_id"] == ["google-id"]
        assert params["redirect_uri"] == ["https://agenda.test/api/auth/callback/google"]
        assert params["access_type"] == ["offline"]
        assert "https://www.googleapis.com/auth/calendar.readonly" in params["scope"][0]

    def test_not_configured(self, test_db, monkeypatch):
        """A provider without credentials returns 503."""
        monkeypatch.setattr(config, "GITHUB_CLIENT_ID", None)
        with pytest.raises(HTTPException) as exc:
            authorization_url("github")
        assert exc.value.status_code == 503

    def test_unknown_provider(self, test_db):
        """Unknown providers return 404."""
        with pytest.raises(HTTPException) as exc:
            authorization_url("myspace")
        assert exc.value.status_code == 404


class TestCompleteSignIn:
    """Tests for the OAuth callback."""

    def test_invalid_state(self, test_db, providers):
        """An unknown state is rejected before contacting the provider."""
        with pytest.raises(HTTPException) as exc:
            asyncio.run(complete_sign_in("github", "code", "forged"))
        assert exc.value.status_code == 400

    def test_state_bound_to_provider(self, test_db, providers):
        """A state issued for Google can't be used for GitHub."""
        create_verification_db("oauth-state:abc", "google")
        with pytest.raises(HTTPException):
            asyncio.run(complete_sign_in("github", "code", "abc"))

    def test_github_sign_in_creates_user(self, test_db, providers, provider_api):
        """First sign-in creates the user, the account link, a personal workspace and a session."""
        github_routes(provider_api)
        state = parse_qs(urlparse(authorization_url("github")).query)["state"][0]

        session, user = asyncio.run(complete_sign_in("github", "code", state))

        assert user.email == "ada@example.com"
        assert user.name == "ada"
        assert user.image == "https://avatars.test/7"
        assert get_session_by_token_db(session.token).user_id == user.id
        assert get_personal_workspace_db(user.id) is not None
        assert [a.provider_id for a in get_accounts_db(user.id)] == ["github"]

    def test_state_single_use(self, test_db, providers, provider_api):
        """A state can't be replayed."""
        github_routes(provider_api)
        state = parse_qs(urlparse(authorization_url("github")).query)["state"][0]
        asyncio.run(complete_sign_in("github", "code", state))

        with pytest.raises(HTTPException):
            asyncio.run(complete_sign_in("github", "code", state))

    def test_second_provider_links_same_user(self, test_db, providers, provider_api):
        """Signing in with Google using the same email links to the existing user."""
        github_routes(provider_api)
        google_routes(provider_api)

        github_state = parse_qs(urlparse(authorization_url("github")).query)["state"][0]
        _, first = asyncio.run(complete_sign_in("github", "code", github_state))
        google_state = parse_qs(urlparse(authorization_url("google")).query)["state"][0]
        _, second = asyncio.run(complete_sign_in("google", "code", google_state))

        assert second.id == first.id
        accounts = {a.provider_id: a for a in get_accounts_db(first.id)}
        assert set(accounts) == {"github", "google"}
        assert accounts["google"].refresh_token == "1//refresh"
        assert accounts["google"].access_token_expires_at is not None

    def test_unverified_google_email_not_linked(self, user, providers, provider_api):
        """A Google profile with an unverified email gets its own user instead of joining an existing one."""
        google_routes(provider_api, email=user.email, email_verified=False)
        state = parse_qs(urlparse(authorization_url("google")).query)["state"][0]

        _, signed_in = asyncio.run(complete_sign_in("google", "code", state))

        assert signed_in.id != user.id
        assert signed_in.email is None
        assert get_accounts_db(user.id) == []

    def test_provider_failure(self, test_db, providers, provider_api):
        """A failed token exchange surfaces as an integration error."""
        provider_api[("POST", "https://github.com/login/oauth/access_token")] = httpx.Response(500)
        state = parse_qs(urlparse(authorization_url("github")).query)["state"][0]

        with pytest.raises(IntegrationError):
            asyncio.run(complete_sign_in("github", "code", state))


class TestGetCurrentUser:
    """Tests for the session dependency."""

    def test_missing_token(self, test_db):
        """No token means 401."""
        with pytest.raises(HTTPException) as exc:
            get_current_user(None)
        assert exc.value.status_code == 401

    def test_valid_token(self, user):
        """A live session resolves to its user."""
        assert get_current_user("test-token").id == user.id

    def test_expired_token(self, user):
        """Expired sessions are rejected."""
        create_session_db(user.id, "stale", -1)
        with pytest.raises(HTTPException) as exc:
            get_current_user("stale")
        assert exc.value.status_code == 401
