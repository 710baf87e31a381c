#!/usr/bin/env python3
"""Generate an OAuth2 token using the authorization code flow.

The ``user`` subcommand opens the identity provider's login page, waits for
the redirect on a short-lived local callback listener, checks the returned
``state`` against the one it issued, exchanges the authorization code for an
access/refresh token pair and prints the result. Client credentials and the
cluster URL are loaded from ``.env`` and can be overridden on the command
line. The ``authorize`` subcommand only prints a freshly generated
authorization URL.
"""
from __future__ import annotations

import argparse
import enum
import html
import secrets
import string
import sys
import textwrap
import threading
import time
import webbrowser
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Tuple
from urllib import parse as urlparse

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from dotenv import dotenv_values
from flask import Flask, Response, request
from werkzeug.serving import BaseWSGIServer, make_server

ALPHA_LOWER = string.ascii_lowercase
TOKEN_LENGTH = 24
DEFAULT_ENV_FILE = ".env"
DEFAULT_SCOPES = ["hydra", "offline", "openid"]
DEFAULT_REDIRECT_URL = "http://localhost:4445/callback"
DEFAULT_TIMEOUT = 30
AUTH_PATH = "/oauth2/auth"
TOKEN_PATH = "/oauth2/token"
SHUTDOWN_GRACE_SECONDS = 1.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0
PLAIN_TEXT = "text/plain; charset=utf-8"
HTML_TEXT = "text/html; charset=utf-8"


class TokenFlowError(RuntimeError):
    """Base class for every error that ends a token flow run."""


class RandomSourceError(TokenFlowError):
    """The operating system entropy source could not be read."""


class MalformedEndpointError(TokenFlowError):
    """A configured URL cannot be used to reach the provider."""


class CallbackError(TokenFlowError):
    """The provider redirect was rejected before any token exchange."""


class ProviderDenialError(CallbackError):
    def __init__(self, error: str, description: str = "") -> None:
        self.error = error
        self.description = description
        message = f"Got error: {error}"
        if description:
            message += f" ({description})"
        super().__init__(message)


class StateMismatchError(CallbackError):
    def __init__(self, expected: str, received: str) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"States do not match. Expected {expected}, got {received}")


class MissingCodeError(CallbackError):
    """The redirect passed state validation but carried no ``code``."""


class ExchangeError(TokenFlowError):
    def __init__(self, message: str, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(message)


class ListenerState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    HANDLING = "handling"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ClientConfig:
    client_id: str
    client_secret: str | None
    redirect_uri: str
    scopes: List[str]
    auth_url: str
    token_url: str


@dataclass
class TokenEnvDefaults:
    client_id: str | None = None
    client_secret: str | None = None
    cluster_url: str | None = None


@dataclass
class TokenResult:
    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None
    id_token: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_token(cls, token: Mapping[str, Any]) -> "TokenResult":
        expires_at = token.get("expires_at")
        expiry = None
        if expires_at:
            expiry = datetime.fromtimestamp(int(expires_at), tz=timezone.utc)
        return cls(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token") or None,
            expiry=expiry,
            id_token=token.get("id_token") or None,
            raw=dict(token),
        )


@dataclass
class CallbackOutcome:
    token: TokenResult | None = None
    error: TokenFlowError | None = None


def generate_correlation_token(length: int = TOKEN_LENGTH, alphabet: str = ALPHA_LOWER) -> str:
    """Return ``length`` characters drawn uniformly from ``alphabet``.

    Characters come from :mod:`secrets`, which reads the operating system
    CSPRNG. A failing entropy source is reported as :class:`RandomSourceError`.
    """
    if length <= 0:
        raise ValueError("length must be positive")
    if not alphabet:
        raise ValueError("alphabet must not be empty")
    try:
        return "".join(secrets.choice(alphabet) for _ in range(length))
    except (OSError, NotImplementedError) as exc:
        raise RandomSourceError(f"Could not generate random state: {exc}") from exc


def _encode_query(params: Dict[str, Any]) -> str:
    safe_params = {k: v for k, v in params.items() if v is not None}
    return urlparse.urlencode(safe_params)


def _parse_http_url(value: str | None, label: str) -> urlparse.SplitResult:
    if not value:
        raise MalformedEndpointError(f"Missing {label}.")
    try:
        parsed = urlparse.urlsplit(value)
        # Accessing the port validates it.
        parsed.port
    except ValueError as exc:
        raise MalformedEndpointError(f"Invalid {label} {value!r}: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise MalformedEndpointError(
            f"Invalid {label} {value!r}: expected an absolute http(s) URL."
        )
    return parsed


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")


def build_authorization_url(config: ClientConfig, state: str, nonce: str) -> str:
    _parse_http_url(config.auth_url, "authorization URL")
    _parse_http_url(config.redirect_uri, "redirect URL")
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(config.scopes) or None,
        "state": state,
    }
    separator = "&" if "?" in config.auth_url else "?"
    return (
        f"{config.auth_url}{separator}{_encode_query(params)}"
        f"&{_encode_query({'nonce': nonce})}"
    )


def exchange_code(
    config: ClientConfig,
    code: str,
    verify_tls: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> TokenResult:
    """Redeem ``code`` at the token endpoint.

    Authorization codes are single-use, so a rejected exchange is raised as
    :class:`ExchangeError` and never retried.
    """
    session = OAuth2Session(
        client_id=config.client_id,
        client_secret=config.client_secret,
        scope=" ".join(config.scopes),
        redirect_uri=config.redirect_uri,
    )
    try:
        token = session.fetch_token(
            config.token_url,
            grant_type="authorization_code",
            code=code,
            verify=verify_tls,
            timeout=timeout,
        )
    except OAuthError as exc:
        raise ExchangeError(
            f"Could not exchange code for token: {exc}",
            payload={"error": exc.error, "error_description": exc.description},
        ) from exc
    except requests.RequestException as exc:
        body = exc.response.text if exc.response is not None else None
        raise ExchangeError(
            f"Could not exchange code for token: {exc}", payload=body
        ) from exc
    except ValueError as exc:
        raise ExchangeError(
            f"Could not exchange code for token: token endpoint did not return JSON ({exc})"
        ) from exc
    finally:
        session.close()
    if not token.get("access_token"):
        raise ExchangeError(
            "Could not exchange code for token: server response missing access_token",
            payload=dict(token),
        )
    return TokenResult.from_token(token)


def _format_expiry(expiry: datetime | None) -> str:
    if expiry is None:
        return "never"
    return expiry.isoformat()


def render_token_text(token: TokenResult) -> str:
    lines = [
        f"Access Token:\n\t{token.access_token}",
        f"Refresh Token:\n\t{token.refresh_token or ''}",
        f"Expires in:\n\t{_format_expiry(token.expiry)}",
    ]
    if token.id_token:
        lines.append(f"ID Token:\n\t{token.id_token}")
    return "\n\n".join(lines) + "\n"


def render_token_html(token: TokenResult) -> str:
    items = [
        ("Access Token", token.access_token),
        ("Refresh Token", token.refresh_token or ""),
        ("Expires in", _format_expiry(token.expiry)),
    ]
    if token.id_token:
        items.append(("ID Token", token.id_token))
    rows = "\n".join(
        f"\t<li>{label}: <code>{html.escape(value)}</code></li>" for label, value in items
    )
    return f"<html><head></head><body>\n<ul>\n{rows}\n</ul></body></html>"


class CallbackListener:
    """Local HTTP endpoint that accepts exactly one provider redirect.

    The listener moves through :class:`ListenerState` from ``IDLE`` to
    ``STOPPED``. The first request on the callback path is validated and, if
    it passes, handed to ``exchange``. Whatever the result, a delayed shutdown
    is then scheduled so the response can flush before the socket closes.
    """

    def __init__(
        self,
        redirect_uri: str,
        expected_state: str,
        exchange: Callable[[str], TokenResult],
        grace_period: float = SHUTDOWN_GRACE_SECONDS,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
    ) -> None:
        target = _parse_http_url(redirect_uri, "redirect URL")
        self.host = target.hostname
        self.port = target.port if target.port is not None else (443 if target.scheme == "https" else 80)
        self.path = target.path or "/"
        self.expected_state = expected_state
        self.grace_period = grace_period
        self.shutdown_timeout = shutdown_timeout
        self.state = ListenerState.IDLE
        self.outcome: CallbackOutcome | None = None
        self._exchange = exchange
        self._server: BaseWSGIServer | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="callback-shutdown")
        self._shutdown_future: Future | None = None
        self._stopped = threading.Event()
        self.app = Flask(__name__)
        self.app.add_url_rule(self.path, "callback", self._callback_view, methods=["GET"])

    def listen(self) -> BaseWSGIServer:
        """Bind the listening socket without serving yet."""
        if self.state is not ListenerState.IDLE:
            raise RuntimeError(f"Callback listener cannot listen while {self.state.value}.")
        self._server = make_server(self.host, self.port, self.app)
        self.port = self._server.server_port
        self.state = ListenerState.LISTENING
        return self._server

    def serve(self) -> CallbackOutcome | None:
        """Serve until the scheduled shutdown completes and return the outcome."""
        server = self._server or self.listen()
        try:
            server.serve_forever()
        finally:
            self._mark_stopped()
        return self.outcome

    def wait(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    def schedule_shutdown(self) -> Future:
        if self._shutdown_future is None:
            self.state = ListenerState.SHUTTING_DOWN
            self._shutdown_future = self._executor.submit(self._delayed_shutdown)
        return self._shutdown_future

    def handle_callback(self, params: Mapping[str, str]) -> Tuple[str, int, str]:
        """Validate one redirect and return ``(body, status, content_type)``."""
        if self._shutdown_future is not None or self.state is ListenerState.STOPPED:
            return "Callback already handled; the listener is shutting down.", 409, PLAIN_TEXT
        self.state = ListenerState.HANDLING
        try:
            token = self._validate_and_exchange(params)
        except TokenFlowError as exc:
            self.outcome = CallbackOutcome(error=exc)
            return str(exc), 500, PLAIN_TEXT
        else:
            self.outcome = CallbackOutcome(token=token)
            print(render_token_text(token))
            return render_token_html(token), 200, HTML_TEXT
        finally:
            self.schedule_shutdown()

    def _validate_and_exchange(self, params: Mapping[str, str]) -> TokenResult:
        error = params.get("error")
        if error:
            raise ProviderDenialError(error, params.get("error_description", ""))
        received = params.get("state", "")
        if received != self.expected_state:
            raise StateMismatchError(self.expected_state, received)
        code = params.get("code", "")
        if not code:
            raise MissingCodeError("Callback did not include an authorization code.")
        try:
            return self._exchange(code)
        except TokenFlowError:
            raise
        except Exception as exc:
            raise ExchangeError(f"Could not exchange code for token: {exc}") from exc

    def _callback_view(self) -> Response:
        body, status, content_type = self.handle_callback(request.args)
        return Response(body, status=status, content_type=content_type)

    def _delayed_shutdown(self) -> None:
        time.sleep(self.grace_period)
        server = self._server
        if server is None:
            self._mark_stopped()
            return
        # server.shutdown() blocks until serve_forever() returns.
        stopper = threading.Thread(target=server.shutdown, name="callback-stop", daemon=True)
        stopper.start()
        stopper.join(self.shutdown_timeout)
        if stopper.is_alive():
            print(
                f"Warning: callback listener did not stop within {self.shutdown_timeout}s; "
                "abandoning shutdown.",
                file=sys.stderr,
            )

    def _mark_stopped(self) -> None:
        self.state = ListenerState.STOPPED
        self._executor.shutdown(wait=False)
        self._stopped.set()


def _open_browser(url: str, opener: Callable[[str], Any]) -> None:
    try:
        opener(url)
    except webbrowser.Error as exc:
        print(f"Warning: failed to launch browser: {exc}", file=sys.stderr)


def run_flow(
    config: ClientConfig,
    open_browser: bool = True,
    verify_tls: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
    grace_period: float = SHUTDOWN_GRACE_SECONDS,
    browser_opener: Callable[[str], Any] = webbrowser.open,
    exchanger: Callable[..., TokenResult] = exchange_code,
) -> TokenResult:
    """Run one authorization code flow and return the issued tokens.

    Blocks until the callback listener has stopped. Errors recorded by the
    listener are raised once it is down.
    """
    state = generate_correlation_token()
    nonce = generate_correlation_token()
    location = build_authorization_url(config, state, nonce)
    _parse_http_url(config.token_url, "token URL")
    if not verify_tls:
        print("Warning: Skipping TLS certificate verification.", file=sys.stderr)

    def exchange(code: str) -> TokenResult:
        return exchanger(config, code, verify_tls=verify_tls, timeout=timeout)

    listener = CallbackListener(config.redirect_uri, state, exchange, grace_period=grace_period)
    listener.listen()
    print(f"Setting up callback listener on {config.redirect_uri}")
    print("Press ctrl + c on Linux / Windows or cmd + c on OSX to end the process.")
    print(f"If your browser does not open automatically, navigate to:\n\n\t{location}\n")
    if open_browser:
        _open_browser(location, browser_opener)

    outcome = listener.serve()
    if outcome is None:
        raise TokenFlowError("Callback listener stopped without handling a callback.")
    if outcome.error is not None:
        raise outcome.error
    if outcome.token is None:
        raise TokenFlowError("Callback listener recorded neither a token nor an error.")
    return outcome.token


def _determine_env_file(argv: list[str]) -> str:
    env_file = DEFAULT_ENV_FILE
    for idx, arg in enumerate(argv):
        if arg in ("--env-file", "-e"):
            if idx + 1 < len(argv):
                env_file = argv[idx + 1]
        elif arg.startswith("--env-file="):
            env_file = arg.split("=", 1)[1]
        elif arg.startswith("-e="):
            env_file = arg.split("=", 1)[1]
    return env_file


def _load_env_defaults(env_file: str) -> TokenEnvDefaults:
    path = Path(env_file)
    if not path.exists():
        return TokenEnvDefaults()
    values = dotenv_values(path)
    return TokenEnvDefaults(
        client_id=values.get("client_id"),
        client_secret=values.get("client_secret"),
        cluster_url=values.get("cluster_url"),
    )


def _default_endpoint(cluster_url: str | None, path: str) -> str | None:
    if not cluster_url:
        return None
    return _join_url(cluster_url, path)


def _split_scopes(value: str) -> List[str]:
    return [scope.strip() for scope in value.split(",") if scope.strip()]


def _client_config_from_args(args: argparse.Namespace) -> ClientConfig:
    if not args.id:
        raise SystemExit(
            f"A client id is required. Pass --id or set client_id in {args.env_file}."
        )
    if not args.auth_url or not args.token_url:
        raise SystemExit(
            "Authorization and token URLs are required. Pass --auth-url/--token-url "
            f"or set cluster_url in {args.env_file}."
        )
    return ClientConfig(
        client_id=args.id,
        client_secret=args.secret,
        redirect_uri=args.redirect,
        scopes=args.scopes or list(DEFAULT_SCOPES),
        auth_url=args.auth_url,
        token_url=args.token_url,
    )


def handle_user(args: argparse.Namespace) -> None:
    config = _client_config_from_args(args)
    run_flow(
        config,
        open_browser=not args.no_open,
        verify_tls=not args.skip_tls_verify,
        timeout=args.timeout,
        grace_period=args.shutdown_grace,
    )


def handle_authorize(args: argparse.Namespace) -> None:
    config = _client_config_from_args(args)
    state = generate_correlation_token()
    nonce = generate_correlation_token()
    location = build_authorization_url(config, state, nonce)
    print(
        textwrap.dedent(
            f"""
            Authorization URL:

            \t{location}

            State: {state}
            Nonce: {nonce}
            """
        ).strip()
    )
    print(
        "\nNo callback listener is running for this URL. Use the `user` subcommand "
        "to complete the flow and exchange the code."
    )


def _add_client_arguments(parser: argparse.ArgumentParser, defaults: TokenEnvDefaults) -> None:
    parser.add_argument(
        "--scopes",
        type=_split_scopes,
        action="extend",
        default=None,
        help=f"Force scopes, comma separated or repeated (default: {','.join(DEFAULT_SCOPES)}).",
    )
    parser.add_argument(
        "--id",
        default=defaults.client_id,
        help="Force a client id, defaults to client_id from the env file.",
    )
    parser.add_argument(
        "--secret",
        default=defaults.client_secret,
        help="Force a client secret, defaults to client_secret from the env file.",
    )
    parser.add_argument(
        "--redirect",
        default=DEFAULT_REDIRECT_URL,
        help="Force a redirect url (default: %(default)s).",
    )
    parser.add_argument(
        "--auth-url",
        default=_default_endpoint(defaults.cluster_url, AUTH_PATH),
        help=(
            "Force the authorization url. The authorization url is the URL that the user "
            "will open in the browser, defaults to cluster_url from the env file."
        ),
    )
    parser.add_argument(
        "--token-url",
        default=_default_endpoint(defaults.cluster_url, TOKEN_PATH),
        help=(
            "Force a token url. The token url is used to exchange the auth code, "
            "defaults to cluster_url from the env file."
        ),
    )


def build_parser(defaults: TokenEnvDefaults, env_file: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate OAuth2 tokens using the authorization code flow.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.set_defaults(env_defaults=defaults)
    parser.add_argument(
        "--env-file",
        "-e",
        default=env_file,
        help="Path to the .env file containing client_id, client_secret and cluster_url (default: %(default)s).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    user = subparsers.add_parser(
        "user",
        help="Generate an OAuth2 token using the code flow.",
    )
    _add_client_arguments(user, defaults)
    user.add_argument(
        "--no-open",
        action="store_true",
        help="Do not open the browser window automatically.",
    )
    user.add_argument(
        "--skip-tls-verify",
        action="store_true",
        help="Do not verify the TLS certificate of the token endpoint.",
    )
    user.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help="Token endpoint timeout in seconds (default: %(default)s).",
    )
    user.add_argument(
        "--shutdown-grace",
        type=float,
        default=SHUTDOWN_GRACE_SECONDS,
        help="Seconds to wait after the callback before stopping the listener (default: %(default)s).",
    )
    user.set_defaults(func=handle_user)

    authorize = subparsers.add_parser(
        "authorize",
        help="Print a freshly generated authorization URL without starting the listener.",
    )
    _add_client_arguments(authorize, defaults)
    authorize.set_defaults(func=handle_authorize)

    return parser


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    env_file = _determine_env_file(argv)
    defaults = _load_env_defaults(env_file)
    parser = build_parser(defaults, env_file)
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except RuntimeError as exc:
        parser.exit(status=1, message=f"{exc}\n")


if __name__ == "__main__":
    main()
