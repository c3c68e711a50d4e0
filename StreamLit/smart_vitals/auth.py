"""SMART authorization: building the authorize redirect and managing tokens.

AuthorizationRedirector persists the PKCE verifier, the anti-CSRF state and the
discovered token endpoint before handing back the URL the browser should be
sent to. TokenClient reads those values back when the EHR redirects to us, and
later refreshes the access token for the vitals pages.
"""
from __future__ import annotations

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

from . import fhir_client
from .config import SmartSettings
from .context_store import ContextKey, ContextStore
from .errors import ConfigError, RefreshError, StateMismatch, TokenExchangeError
from .models import SmartConfiguration, TokenSet
from .pkce import code_challenge, generate_code_verifier, generate_state

logger = logging.getLogger(__name__)


def build_authorize_url(
    auth_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    state: str,
    launch: str,
    aud: str,
) -> str:
    q = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "launch": launch,
        "state": state,
        "aud": aud,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    sep = "&" if "?" in auth_url else "?"
    return f"{auth_url}{sep}{urlencode(q)}"


class AuthorizationRedirector:
    def __init__(self, store: ContextStore, settings: SmartSettings):
        self.store = store
        self.settings = settings

    def authorize(self, issuer: str, config: SmartConfiguration, launch: str) -> str:
        """Persist a fresh launch context and return the authorization URL."""
        missing = self.settings.missing_client_identity()
        if missing:
            raise ConfigError(f"Missing client configuration: {', '.join(missing)}")

        verifier = generate_code_verifier()
        state = generate_state()
        # Must be durable before the browser leaves the app
        self.store.update({
            ContextKey.ISSUER: issuer,
            ContextKey.LAUNCH: launch,
            ContextKey.CODE_VERIFIER: verifier,
            ContextKey.STATE: state,
            ContextKey.TOKEN_ENDPOINT: config.token_endpoint,
        })
        # The callback arrives in a new session and finds this store by its state
        self.store.bind_state(state)
        url = build_authorize_url(
            config.authorization_endpoint,
            self.settings.client_id,
            self.settings.redirect_uri,
            self.settings.scopes,
            code_challenge(verifier),
            state,
            launch=launch,
            aud=issuer,
        )
        logger.info("Built authorization request for %s", config.authorization_endpoint)
        return url


class TokenClient:
    def __init__(self, store: ContextStore, settings: SmartSettings):
        self.store = store
        self.settings = settings

    def exchange(self, code: str, state: str) -> TokenSet:
        """Trade an authorization code for tokens after checking the returned state.

        Raises StateMismatch before any network call if the state is not the one
        persisted by AuthorizationRedirector.
        """
        ctx = self.store.launch_context()
        if not ctx.expected_state or not secrets.compare_digest(str(state), ctx.expected_state):
            raise StateMismatch("State mismatch")
        if not ctx.code_verifier or not ctx.token_endpoint:
            raise TokenExchangeError("Launch context is incomplete; start the launch again from the EHR")
        missing = self.settings.missing_client_identity()
        if missing:
            raise TokenExchangeError(f"Missing client configuration: {', '.join(missing)}")
        return fhir_client.exchange_token(
            ctx.token_endpoint,
            code,
            self.settings.client_id,
            self.settings.redirect_uri,
            ctx.code_verifier,
            timeout=self.settings.request_timeout,
        )

    def refresh(self) -> str:
        """Refresh the stored access token and return the new one."""
        stored: Optional[str] = self.store.get(ContextKey.REFRESH_TOKEN)
        token_endpoint = self.store.get(ContextKey.TOKEN_ENDPOINT)
        if not stored or not token_endpoint:
            raise RefreshError("No refresh token available")
        tokens = fhir_client.refresh_token(
            token_endpoint,
            stored,
            self.settings.client_id,
            timeout=self.settings.request_timeout,
        )
        # Last writer wins; only one tab ever touches this store
        updates = {ContextKey.ACCESS_TOKEN: tokens.access_token}
        if tokens.refresh_token:
            updates[ContextKey.REFRESH_TOKEN] = tokens.refresh_token
        self.store.update(updates)
        logger.info("Access token refreshed")
        return tokens.access_token
