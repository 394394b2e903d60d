from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..state.models import AuthSession, TokenResponse
from ..state.session_store import EXPIRY_KEY, TOKEN_KEY, InMemorySessionStore, SessionStore
from .errors import AuthenticationError, ConfigurationError, NotAuthenticatedError

logger = logging.getLogger(__name__)


# Narrowest Drive scope: the app's hidden appDataFolder only
DRIVE_APPDATA_SCOPE = "https://www.googleapis.com/auth/drive.appdata"

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConsentFlow(Protocol):
    """Interactive authorization returning a fresh access token."""

    def authorize(self, client_id: str, scope: str) -> TokenResponse: ...


class _RedirectHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        query = parse_qs(urlparse(self.path).query)
        params = {k: v[0] for k, v in query.items() if v}
        if "code" not in params and "error" not in params:
            # Favicon and other stray requests
            self.send_response(404)
            self.end_headers()
            return
        self.server.oauth_params = params  # type: ignore[attr-defined]
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.end_headers()
        self.wfile.write(b"Sign-in finished. You can close this window.")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        # Query strings carry the authorization code; keep them out of stderr
        return


class LoopbackConsentFlow:
    """
    OAuth 2.0 authorization-code flow for a local process.

    - Opens the provider's consent page in the system browser with PKCE (S256),
      a random `state`, and `prompt=consent`.
    - Receives the redirect on a one-shot listener bound to 127.0.0.1 on a
      random port, then exchanges the code at the token endpoint.
    - Cancellation (`access_denied`), provider errors, a `state` mismatch, or
      no redirect within `timeout` seconds raise AuthenticationError.
    """

    def __init__(
        self,
        *,
        client_secret: Optional[str] = None,
        timeout: float = 300.0,
        http_timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
        auth_url: str = AUTH_URL,
        token_url: str = TOKEN_URL,
    ) -> None:
        self._client_secret = client_secret
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=http_timeout)
        self._open_browser = open_browser
        self._auth_url = auth_url
        self._token_url = token_url

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "LoopbackConsentFlow":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def authorize(self, client_id: str, scope: str) -> TokenResponse:
        verifier = secrets.token_urlsafe(64)
        challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest())
        state = secrets.token_urlsafe(16)

        server = HTTPServer(("127.0.0.1", 0), _RedirectHandler)
        server.oauth_params = None  # type: ignore[attr-defined]
        server.timeout = 1.0
        redirect_uri = f"http://127.0.0.1:{server.server_address[1]}/"
        try:
            params = {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": scope,
                "state": state,
                "prompt": "consent",
                "code_challenge": challenge.decode("ascii").rstrip("="),
                "code_challenge_method": "S256",
            }
            self._open_browser(f"{self._auth_url}?{urlencode(params)}")
            logger.info("Waiting for consent on %s", redirect_uri)
            reply = self._wait_for_redirect(server)
        finally:
            server.server_close()

        if reply.get("error"):
            if reply["error"] == "access_denied":
                raise AuthenticationError("Sign-in was cancelled")
            raise AuthenticationError(f"Sign-in failed: {reply['error']}")
        if reply.get("state") != state:
            raise AuthenticationError("Sign-in failed: state mismatch")
        return self.exchange_code(client_id, reply["code"], redirect_uri, verifier)

    def _wait_for_redirect(self, server: HTTPServer) -> Dict[str, str]:
        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            server.handle_request()
            params = getattr(server, "oauth_params", None)
            if params:
                return params
        raise AuthenticationError("Sign-in timed out waiting for consent")

    def exchange_code(self, client_id: str, code: str, redirect_uri: str, verifier: str) -> TokenResponse:
        data = {
            "code": code,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": verifier,
        }
        if self._client_secret:
            data["client_secret"] = self._client_secret
        try:
            resp = self._client.post(self._token_url, data=data)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise AuthenticationError("Sign-in failed: token endpoint unreachable") from exc

        if resp.status_code != 200:
            desc = None
            try:
                body = resp.json()
                if isinstance(body, dict):
                    desc = body.get("error_description") or body.get("error")
            except ValueError:
                pass
            raise AuthenticationError(f"Sign-in failed: {desc or f'HTTP {resp.status_code}'}")
        try:
            return TokenResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as exc:
            raise AuthenticationError("Sign-in failed: malformed token response") from exc


class RemoteAuthSession:
    """
    Owns the storage provider's access token.

    States: signed out -> authenticating -> signed in -> (expired | signed out).

    - `configure(client_id)` must be called before `sign_in()` or any remote
      operation; otherwise those raise ConfigurationError.
    - Expiry is checked locally on every `is_authenticated()` call.
    - The token and its expiry are mirrored into `store`, which must not
      outlive the login session. A stored pair that is already expired is
      discarded on load.
    - Only one interactive sign-in may be outstanding; a concurrent call fails
      immediately instead of replacing the pending one.
    """

    def __init__(
        self,
        *,
        store: Optional[SessionStore] = None,
        consent_flow: Optional[ConsentFlow] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
        clock: Callable[[], int] = _now_ms,
        scope: str = DRIVE_APPDATA_SCOPE,
    ) -> None:
        self._store: SessionStore = store if store is not None else InMemorySessionStore()
        self._flow = consent_flow
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._scope = scope
        self._client_id: Optional[str] = None
        self._session: Optional[AuthSession] = None
        self._sign_in_lock = threading.Lock()
        self._load()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteAuthSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Configuration ---------------
    def configure(self, client_id: str) -> None:
        if not client_id or not client_id.strip():
            raise ConfigurationError("client_id is required")
        self._client_id = client_id.strip()
        logger.info("Storage session configured")

    @property
    def is_configured(self) -> bool:
        return self._client_id is not None

    def require_configured(self) -> str:
        if self._client_id is None:
            raise ConfigurationError("Client ID not configured. Run configure() first.")
        return self._client_id

    # --------------- State ---------------
    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.is_valid(self._clock())

    @property
    def expires_at_ms(self) -> Optional[int]:
        return self._session.expires_at_ms if self._session else None

    @property
    def access_token(self) -> str:
        """Current bearer token; raises NotAuthenticatedError when absent or expired."""
        session = self._session
        if session is None or not session.is_valid(self._clock()):
            raise NotAuthenticatedError("Not authenticated. Please sign in again.")
        return session.access_token

    @property
    def sign_in_pending(self) -> bool:
        return self._sign_in_lock.locked()

    # --------------- Lifecycle ---------------
    def sign_in(self) -> AuthSession:
        """
        Run the interactive consent flow and store the resulting token.

        Raises:
        - ConfigurationError when no client id is configured.
        - AuthenticationError on cancellation, provider error, or when another
          sign-in is already in progress.
        """
        client_id = self.require_configured()
        if not self._sign_in_lock.acquire(blocking=False):
            raise AuthenticationError("Sign-in already in progress")
        try:
            flow = self._flow
            owned: Optional[LoopbackConsentFlow] = None
            if flow is None:
                flow = owned = LoopbackConsentFlow()
            try:
                token = flow.authorize(client_id, self._scope)
            except AuthenticationError:
                raise
            except Exception as exc:
                raise AuthenticationError("Sign-in failed") from exc
            finally:
                if owned is not None:
                    owned.close()
            session = self._handle_token_response(token)
        finally:
            self._sign_in_lock.release()
        logger.info("Signed in to storage provider")
        return session

    def sign_out(self) -> None:
        """Best-effort revoke with the provider, then always clear local state."""
        token = self._session.access_token if self._session else None
        if token:
            try:
                resp = self._client.post(REVOKE_URL, data={"token": token})
                if resp.status_code != 200:
                    logger.warning("Token revocation returned HTTP %s", resp.status_code)
            except httpx.HTTPError as exc:
                logger.warning("Token revocation failed: %s", type(exc).__name__)
        self.clear()
        logger.info("Signed out of storage provider")

    def clear(self) -> None:
        """Forget the session locally (used on sign-out and on HTTP 401)."""
        self._session = None
        self._store.remove(TOKEN_KEY)
        self._store.remove(EXPIRY_KEY)

    # --------------- Internal ---------------
    def _handle_token_response(self, token: TokenResponse) -> AuthSession:
        if not token.access_token:
            raise AuthenticationError("Sign-in failed: no access token returned")
        session = AuthSession(
            access_token=token.access_token,
            expires_at_ms=self._clock() + token.expires_in * 1000,
        )
        self._session = session
        self._store.set(TOKEN_KEY, session.access_token)
        self._store.set(EXPIRY_KEY, str(session.expires_at_ms))
        return session

    def _load(self) -> None:
        token = self._store.get(TOKEN_KEY)
        exp = self._store.get(EXPIRY_KEY)
        try:
            expires_at = int(exp) if exp is not None else None
        except ValueError:
            expires_at = None
        if token and expires_at is not None and self._clock() < expires_at:
            self._session = AuthSession(access_token=token, expires_at_ms=expires_at)
            logger.info("Restored storage session")
        else:
            self.clear()


__all__ = [
    "DRIVE_APPDATA_SCOPE",
    "ConsentFlow",
    "LoopbackConsentFlow",
    "RemoteAuthSession",
]
