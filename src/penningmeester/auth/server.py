"""
Local HTTPS callback server for the OAuth2 authorization-code flow.

One :class:`AuthorizationServer` run performs exactly one authorization:

1. bind an HTTPS listener on the redirect host/port (fails fast with
   :class:`BindError`, before the operator is sent anywhere),
2. present the provider's authorization URL,
3. accept the browser redirect on ``/callback``, validate ``state``, exchange
   the code and persist the tokens,
4. shut the listener down on every exit path.

Requests are served by a thread per connection; the callback decision itself
runs on the asyncio event loop, so session transitions happen one at a time.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import html
import logging
import secrets
import threading
import webbrowser
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from ssl import SSLContext
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

from penningmeester import __version__
from penningmeester.auth.oauth2 import OAuth2Client, generate_pkce_pair, generate_state
from penningmeester.auth.tls import load_server_context
from penningmeester.auth.token_store import TokenRecord, TokenStore
from penningmeester.config import WebServerConfig
from penningmeester.errors import (
    AuthError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    BindError,
    CallbackError,
    TokenExchangeError,
    TokenStorageError,
)

logger = logging.getLogger("penningmeester.auth.server")

# Upper bound a handler thread waits for the event loop to decide on a callback
_DISPATCH_TIMEOUT = 120.0


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


_TERMINAL = {SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.TIMED_OUT}


class AuthorizationSession:
    """State of a single authorization attempt.

    Only touched from the event loop thread. The outcome (a TokenRecord or
    the failure) is published on :attr:`outcome` exactly once.
    """

    def __init__(self, redirect_uri: str, *, use_pkce: bool = False) -> None:
        self.redirect_uri = redirect_uri
        self.expected_state = generate_state()
        self.code_verifier: str | None = None
        self.code_challenge: str | None = None
        if use_pkce:
            self.code_verifier, self.code_challenge = generate_pkce_pair()
        self.status = SessionStatus.AWAITING_CALLBACK
        self.outcome: asyncio.Future[TokenRecord] = asyncio.get_running_loop().create_future()

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    def state_matches(self, state: str | None) -> bool:
        if not state:
            return False
        return secrets.compare_digest(state.encode(), self.expected_state.encode())

    def begin_exchange(self) -> None:
        if self.status is not SessionStatus.AWAITING_CALLBACK:
            raise RuntimeError(f"cannot exchange a code in state {self.status.value}")
        self.status = SessionStatus.EXCHANGING

    def succeed(self, record: TokenRecord) -> None:
        if self.status is not SessionStatus.EXCHANGING:
            raise RuntimeError(f"cannot succeed from state {self.status.value}")
        self.status = SessionStatus.SUCCEEDED
        self.outcome.set_result(record)

    def fail(self, error: AuthError) -> bool:
        """Fail the attempt. Returns False if it had already finished."""
        if self.is_terminal:
            return False
        self.status = SessionStatus.FAILED
        self.outcome.set_exception(error)
        return True

    def time_out(self, timeout: float) -> bool:
        """Give up waiting. Has no effect once a callback is being exchanged."""
        if self.status is not SessionStatus.AWAITING_CALLBACK:
            return False
        self.status = SessionStatus.TIMED_OUT
        self.outcome.set_exception(
            AuthorizationTimeoutError(f"No authorization callback received within {timeout:.0f}s")
        )
        return True

    def abandon(self) -> None:
        """Close the attempt without a result (operator interrupt)."""
        if self.is_terminal:
            return
        self.status = SessionStatus.FAILED
        self.outcome.cancel()


# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallbackResponse:
    """What the browser gets to see."""

    status: int
    title: str
    message: str

    @property
    def ok(self) -> bool:
        return self.status < 400

    def render(self) -> bytes:
        colour, background = ("#16a34a", "#f0fdf4") if self.ok else ("#dc2626", "#fef2f2")
        page = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>penningmeester - {html.escape(self.title)}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, sans-serif;
               display: flex; justify-content: center; align-items: center;
               height: 100vh; margin: 0; background: {background}; }}
        .card {{ background: white; padding: 40px; border-radius: 12px;
                box-shadow: 0 4px 6px rgba(0,0,0,0.1); text-align: center; }}
        h1 {{ color: {colour}; margin-bottom: 10px; }}
        p {{ color: #666; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{html.escape(self.title)}</h1>
        <p>{html.escape(self.message)}</p>
    </div>
</body>
</html>
"""
        return page.encode("utf-8")


def _error(status: int, message: str) -> CallbackResponse:
    return CallbackResponse(status, "Authorization failed", message)


class _CallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for the OAuth2 redirect."""

    server: _CallbackHTTPServer
    server_version = f"penningmeester/{__version__}"
    # Socket timeout for slow or stuck clients
    timeout = 15

    def setup(self) -> None:
        super().setup()
        # The listening socket defers the TLS handshake to this thread
        self.request.do_handshake()

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path == "/":
            self._send(200, b"alive", "text/plain; charset=utf-8")
            return
        if parsed.path != "/callback":
            self._send(404, b"Not found", "text/plain; charset=utf-8")
            return

        params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        response = self.server.dispatch(params)
        self._send(response.status, response.render(), "text/html; charset=utf-8")

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)
        self.close_connection = True

    def log_request(self, code: int | str = "-", size: int | str = "-") -> None:
        # The query string carries the authorization code
        logger.debug("%s %s %s", self.command, urlparse(self.path).path, code)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class _CallbackHTTPServer(ThreadingHTTPServer):
    """HTTPS server handing every callback to the event loop."""

    daemon_threads = False
    block_on_close = True
    # A second process must fail to bind while an authorization is running
    allow_reuse_port = False

    def __init__(
        self,
        server_address: tuple[str, int],
        context: SSLContext,
        loop: asyncio.AbstractEventLoop,
        on_callback: Callable[[dict[str, str]], Any],
    ) -> None:
        super().__init__(server_address, _CallbackHandler)
        self.socket = context.wrap_socket(self.socket, server_side=True, do_handshake_on_connect=False)
        self._loop = loop
        self._on_callback = on_callback
        self._pending: set[concurrent.futures.Future[CallbackResponse]] = set()
        self._pending_lock = threading.Lock()

    def dispatch(self, params: dict[str, str]) -> CallbackResponse:
        """Run the callback coroutine on the loop and wait for its answer."""
        try:
            future = asyncio.run_coroutine_threadsafe(self._on_callback(params), self._loop)
        except RuntimeError:
            return _error(503, "The authorization attempt is shutting down.")

        with self._pending_lock:
            self._pending.add(future)
        try:
            return future.result(timeout=_DISPATCH_TIMEOUT)
        except (concurrent.futures.CancelledError, concurrent.futures.TimeoutError):
            return _error(503, "The authorization attempt was interrupted.")
        except Exception:
            logger.exception("Unexpected error while handling the authorization callback")
            return _error(500, "Internal error while handling the callback.")
        finally:
            with self._pending_lock:
                self._pending.discard(future)

    def cancel_pending(self) -> None:
        with self._pending_lock:
            for future in self._pending:
                future.cancel()

    def handle_error(self, request: Any, client_address: Any) -> None:
        # Failed handshakes (e.g. a browser rejecting the certificate) and dropped
        # connections are expected here
        logger.debug("Error while serving %s", client_address, exc_info=True)


class CallbackListener:
    """Async context manager owning the bound HTTPS listener.

    Binding happens on enter; shutdown and closing the socket are guaranteed
    on exit, whatever the reason for leaving.
    """

    def __init__(
        self,
        address: tuple[str, int],
        context: SSLContext,
        on_callback: Callable[[dict[str, str]], Any],
    ) -> None:
        self.address = address
        self._context = context
        self._on_callback = on_callback
        self._httpd: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._httpd is None:
            raise RuntimeError("listener is not running")
        return self._httpd.server_address[1]

    async def __aenter__(self) -> CallbackListener:
        loop = asyncio.get_running_loop()
        host, port = self.address
        try:
            self._httpd = _CallbackHTTPServer(self.address, self._context, loop, self._on_callback)
        except PermissionError as e:
            raise BindError(
                f"Not allowed to bind {host}:{port} ({e.strerror}). Ports below 1024 need root.",
            ) from e
        except OSError as e:
            raise BindError(
                f"Cannot bind {host}:{port} ({e.strerror or e}). Is another authorization running?",
            ) from e

        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="penningmeester-callback",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Callback server listening on %s:%d", host, self.port)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        httpd = self._httpd
        if httpd is None:
            return
        if exc_type is not None and not issubclass(exc_type, Exception):
            # Interrupted: release handler threads still waiting on the loop
            httpd.cancel_pending()
        await asyncio.to_thread(self._close, httpd)
        self._httpd = None
        logger.debug("Callback server stopped")

    def _close(self, httpd: _CallbackHTTPServer) -> None:
        httpd.shutdown()
        httpd.server_close()
        if self._thread is not None:
            self._thread.join()


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------

def _log_authorization_url(url: str) -> None:
    logger.info("Please open the following URL and log in: %s", url)


class AuthorizationServer:
    """Runs one interactive authorization-code exchange for a provider.

    Usage::

        server = AuthorizationServer(client, store, config.web_server)
        record = await server.authorize()
    """

    def __init__(
        self,
        client: OAuth2Client,
        store: TokenStore,
        web: WebServerConfig,
        *,
        present: Callable[[str], None] | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.web = web
        self._present = present or _log_authorization_url
        self.session: AuthorizationSession | None = None
        self.listener: CallbackListener | None = None

    async def authorize(self) -> TokenRecord:
        """Complete the authorization-code flow and persist the tokens.

        Raises:
            BindError: The listener could not start (nothing was presented).
            CallbackError: State mismatch, provider denial or malformed callback.
            AuthorizationTimeoutError: No callback within ``callback_timeout``.
            TokenExchangeError: The code could not be exchanged.
        """
        provider = self.client.provider
        context = load_server_context(self.web.ssl_cert, self.web.ssl_key, self.web.hostname)
        session = AuthorizationSession(self.web.redirect_uri, use_pkce=provider.use_pkce)
        self.session = session

        async def on_callback(params: dict[str, str]) -> CallbackResponse:
            return await self.handle_callback(session, params)

        self.listener = CallbackListener((self.web.bind_address, self.web.port), context, on_callback)
        try:
            async with self.listener:
                url = self.client.get_authorization_url(
                    session.redirect_uri,
                    session.expected_state,
                    code_challenge=session.code_challenge,
                )
                logger.info("Authorizing %s, waiting up to %.0fs for the callback", provider.name, self.web.callback_timeout)
                self._present(url)
                if self.web.open_browser:
                    webbrowser.open(url)
                return await self._wait(session)
        finally:
            session.abandon()

    async def _wait(self, session: AuthorizationSession) -> TokenRecord:
        timeout = self.web.callback_timeout
        try:
            return await asyncio.wait_for(asyncio.shield(session.outcome), timeout)
        except asyncio.TimeoutError:
            if session.time_out(timeout):
                logger.warning("No callback for %s within %.0fs", self.client.provider.name, timeout)
        # Either timed out just now or an exchange is in flight
        return await session.outcome

    async def handle_callback(self, session: AuthorizationSession, params: dict[str, str]) -> CallbackResponse:
        """Decide on one ``/callback`` request.

        Only the first callback that carries the expected state is honored.
        Anything arriving after the attempt finished is rejected without
        touching the session.
        """
        name = self.client.provider.name
        if session.status is not SessionStatus.AWAITING_CALLBACK:
            logger.warning("Rejecting %s callback, attempt is already %s", name, session.status.value)
            return _error(409, "This authorization attempt has already finished. Start a new one from the terminal.")

        if not session.state_matches(params.get("state")):
            session.fail(CallbackError("State mismatch in authorization callback (stale link or forged request)"))
            return _error(400, "The login link is stale or was not issued by this session.")

        if "error" in params:
            denied = AuthorizationDeniedError(params["error"], params.get("error_description"))
            session.fail(denied)
            return _error(400, str(denied))

        code = params.get("code")
        if not code:
            session.fail(CallbackError("Authorization callback did not contain a code"))
            return _error(400, "The provider did not send an authorization code.")

        logger.info("Received %s callback, exchanging authorization code", name)
        session.begin_exchange()
        try:
            record = await self.client.exchange_code(
                code,
                session.redirect_uri,
                code_verifier=session.code_verifier,
            )
        except TokenExchangeError as e:
            session.fail(e)
            return _error(502, f"Exchanging the authorization code failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while exchanging the %s authorization code", name)
            session.fail(AuthError(f"Exchanging the {name} authorization code failed: {e}"))
            return _error(500, "Internal error while exchanging the authorization code.")

        try:
            self.store.save(record)
        except OSError as e:
            session.fail(TokenStorageError(f"Could not store {name} tokens in {self.store.path}: {e}"))
            return _error(500, "The tokens could not be stored.")

        session.succeed(record)
        logger.info("Login with %s successful", name)
        return CallbackResponse(200, "Authorized", "OK. You can close this page now and return to the terminal.")
