"""cute transport - the handles a command configures and performs.

HttpTransport wraps a requests session behind a curl-like configuration
surface: every option is one call, and the method is kept as separate
sticky flags (get/post/nobody/custom request) the way libcurl keeps them.
WgetTransport shells out to wget for downloads.
"""

import http.cookiejar
import logging
import socket
import subprocess
import time
from collections.abc import Callable
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth, HTTPDigestAuth
from requests_aws4auth import AWS4Auth
from requests_ntlm import HttpNtlmAuth
from urllib3.connection import HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool

from cute.errors import (
    ExecutionError,
    ExecutionTimeout,
    FileAccessError,
    TransportConfigurationError,
)

_LOGGER = logging.getLogger(__name__)

AUTH_SCHEMES = ("basic", "digest", "ntlm", "spnego", "aws_sigv4")
LOGIN_AUTH = {"basic": HTTPBasicAuth, "digest": HTTPDigestAuth, "ntlm": HttpNtlmAuth}

ProgressCallback = Callable[[int, int | None], None]


class TransportResponse:
    """Result of a performed transport."""

    def __init__(self):
        self.status_code: int = 0
        self.reason: str = ""
        self.headers: dict[str, str] = {}
        self.body: str = ""
        self.elapsed_ms: float = 0
        self.trace: list[str] = []

    def header_block(self) -> str:
        lines = [f"HTTP {self.status_code} {self.reason}".rstrip()]
        lines.extend(f"{k}: {v}" for k, v in self.headers.items())
        return "\n".join(lines)


# ── Unix domain sockets ─────────────────────────────────────────────────


class _UnixSocketConnection(HTTPConnection):
    def __init__(self, *args, socket_path=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.socket_path = socket_path

    def _new_conn(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        if isinstance(self.timeout, int | float):
            sock.settimeout(self.timeout)
        sock.connect(self.socket_path)
        return sock


class _UnixSocketPool(HTTPConnectionPool):
    ConnectionCls = _UnixSocketConnection

    def __init__(self, socket_path: str):
        super().__init__("localhost", socket_path=socket_path)


class UnixSocketAdapter(HTTPAdapter):
    """Send every request of a session over one unix socket."""

    def __init__(self, socket_path: str, **kwargs):
        self.socket_path = socket_path
        self._pool = _UnixSocketPool(socket_path)
        super().__init__(**kwargs)

    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self._pool

    def get_connection(self, url, proxies=None):
        return self._pool

    def close(self):
        self._pool.close()
        super().close()


class KeepAliveAdapter(HTTPAdapter):
    """Adapter whose connections turn on SO_KEEPALIVE."""

    socket_options = HTTPConnection.default_socket_options + [
        (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
    ]

    def init_poolmanager(self, *args, **kwargs):
        kwargs["socket_options"] = self.socket_options
        super().init_poolmanager(*args, **kwargs)


def _spnego_auth():
    # gssapi needs the system Kerberos libraries, so it is an optional extra
    try:
        from requests_gssapi import HTTPSPNEGOAuth
    except ImportError:
        raise TransportConfigurationError(
            "SPNEGO needs requests-gssapi; install cute[spnego]",
        ) from None
    return HTTPSPNEGOAuth()


def _format_name(name) -> str:
    return ", ".join(f"{k}={v}" for rdn in name for k, v in rdn)


def peer_certificate_lines(resp) -> list[str]:
    """Describe the server certificate of a streamed response."""
    sock = getattr(getattr(resp.raw, "connection", None), "sock", None)
    getpeercert = getattr(sock, "getpeercert", None)
    if getpeercert is None:
        return ["* No server certificate (not a TLS connection)"]
    cert = getpeercert() or {}
    if not cert:
        return ["* Server certificate not verified; no details available"]
    lines = ["* Server certificate:"]
    lines.append(f"*  subject: {_format_name(cert.get('subject', ()))}")
    lines.append(f"*  issuer: {_format_name(cert.get('issuer', ()))}")
    if cert.get("notBefore"):
        lines.append(f"*  start date: {cert['notBefore']}")
    if cert.get("notAfter"):
        lines.append(f"*  expire date: {cert['notAfter']}")
    alt_names = [value for _, value in cert.get("subjectAltName", ())]
    if alt_names:
        lines.append(f"*  subjectAltName: {', '.join(alt_names)}")
    return lines


class _Session(requests.Session):
    """Session that can keep Authorization across cross-host redirects."""

    def __init__(self, trust_redirect_auth: bool = False):
        super().__init__()
        self.trust_redirect_auth = trust_redirect_auth

    def rebuild_auth(self, prepared_request, response):
        if self.trust_redirect_auth:
            return
        super().rebuild_auth(prepared_request, response)


# ── HTTP transport ──────────────────────────────────────────────────────


class HttpTransport:
    """Configurable, perform-once HTTP handle backed by requests."""

    def __init__(self, session_factory=_Session):
        self._session_factory = session_factory
        self.performed = False
        self.warnings: list[str] = []

        self._url = ""
        self._get = False
        self._post = False
        self._nobody = False
        self._custom_request: str | None = None

        self._headers: list[str] = []
        self._auth_scheme: str | None = None
        self._username: str | None = None
        self._password: str | None = None
        self._aws_region: str | None = None
        self._aws_service: str | None = None
        self._aws_session_token: str | None = None
        self._session: requests.Session | None = None

        self._verbose = False
        self._follow_location = False
        self._max_redirects: int | None = None
        self._cookie_jar: str | None = None
        self._cookie_file: str | None = None
        self._cookies: list[str] = []
        self._cookie_session = False
        self.include_headers = False
        self._progress = False
        self._progress_callback: ProgressCallback | None = None
        self._fail_on_error = False
        self._proxy_tunnel = False
        self._ca_info: str | None = None
        self._cert_info = False
        self._user_agent: str | None = None
        self._referer: str | None = None
        self._globoff = False
        self._tcp_keepalive = False
        self._unrestricted_auth = False
        self._upload_file: str | None = None
        self._post_fields: str | None = None
        self._unix_socket: str | None = None
        self._timeout: float | None = None

    # -- method flags --

    def reset_method(self) -> None:
        """Clear every method flag so the next call starts clean."""
        self._get = False
        self._post = False
        self._nobody = False
        self._custom_request = None

    def get(self, on: bool) -> None:
        self._get = on

    def post(self, on: bool) -> None:
        self._post = on

    def nobody(self, on: bool) -> None:
        self._nobody = on

    def custom_request(self, method: str | None) -> None:
        if method is not None and not method.isalpha():
            raise TransportConfigurationError(f"Invalid custom request method: {method!r}")
        self._custom_request = method.upper() if method else None

    @property
    def effective_method(self) -> str:
        if self._custom_request:
            return self._custom_request
        if self._nobody:
            return "HEAD"
        if self._post:
            return "POST"
        if self._upload_file:
            return "PUT"
        if self._post_fields is not None and not self._get:
            return "POST"
        return "GET"

    @property
    def method_flags(self) -> dict:
        return {
            "get": self._get,
            "post": self._post,
            "nobody": self._nobody,
            "custom_request": self._custom_request,
        }

    # -- everything else --

    def url(self, url: str) -> None:
        self._url = url

    def http_headers(self, headers: list[str]) -> None:
        self._headers = list(headers)

    def http_auth(
        self,
        scheme: str | None,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        if scheme is not None and scheme not in AUTH_SCHEMES:
            raise TransportConfigurationError(f"Unsupported auth scheme: {scheme!r}")
        self._auth_scheme = scheme
        self._username = username
        self._password = password

    def aws_sigv4(
        self,
        region: str | None,
        service: str | None = None,
        session_token: str | None = None,
    ) -> None:
        """Signing scope for aws_sigv4; keys come through http_auth."""
        self._aws_region = region
        self._aws_service = service
        self._aws_session_token = session_token

    def verbose(self, on: bool) -> None:
        self._verbose = on

    def follow_location(self, on: bool) -> None:
        self._follow_location = on

    def max_redirections(self, count: int) -> None:
        if count < 0:
            raise TransportConfigurationError(f"Max redirects must be >= 0, got {count}")
        self._max_redirects = count

    def cookie_jar(self, path: str) -> None:
        self._cookie_jar = path

    def cookie_file(self, path: str) -> None:
        self._cookie_file = path

    def cookie(self, text: str) -> None:
        self._cookies.append(text)

    def cookie_session(self, on: bool) -> None:
        self._cookie_session = on

    def show_header(self, on: bool) -> None:
        self.include_headers = on

    def progress(self, on: bool, callback: ProgressCallback | None = None) -> None:
        self._progress = on
        self._progress_callback = callback

    def fail_on_error(self, on: bool) -> None:
        self._fail_on_error = on

    def http_proxy_tunnel(self, on: bool) -> None:
        self._proxy_tunnel = on

    def ca_info(self, path: str) -> None:
        self._ca_info = path

    def cert_info(self, on: bool) -> None:
        self._cert_info = on

    def useragent(self, agent: str) -> None:
        self._user_agent = agent

    def referer(self, referer: str) -> None:
        self._referer = referer

    def url_globbing_off(self, on: bool) -> None:
        self._globoff = on

    def tcp_keepalive(self, on: bool) -> None:
        self._tcp_keepalive = on

    def unrestricted_auth(self, on: bool) -> None:
        self._unrestricted_auth = on

    def upload_file(self, path: str) -> None:
        self._upload_file = path

    def post_fields(self, body: str) -> None:
        self._post_fields = body

    def unix_socket(self, path: str) -> None:
        self._unix_socket = path

    def timeout(self, seconds: float | None) -> None:
        if seconds is not None and seconds <= 0:
            raise TransportConfigurationError(f"Timeout must be positive, got {seconds}")
        self._timeout = seconds

    # -- perform --

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        for line in self._headers:
            name, _, value = line.partition(":")
            name, value = name.strip(), value.strip()
            if name in headers:
                headers[name] = f"{headers[name]}, {value}"
            else:
                headers[name] = value
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        if self._referer:
            headers["Referer"] = self._referer
        return headers

    def _build_auth(self):
        scheme = self._auth_scheme
        if scheme is None:
            return None
        if scheme in LOGIN_AUTH:
            return LOGIN_AUTH[scheme](self._username or "", self._password or "")
        if scheme == "spnego":
            return _spnego_auth()

        if not (self._username and self._password and self._aws_region):
            msg = "AWS SigV4 credentials incomplete; request sent unsigned"
            _LOGGER.warning(msg)
            self.warnings.append(msg)
            return None
        service = self._aws_service or (urlsplit(self._url).hostname or "").split(".")[0]
        return AWS4Auth(
            self._username,
            self._password,
            self._aws_region,
            service,
            session_token=self._aws_session_token,
        )

    def _load_cookies(self, session: requests.Session) -> None:
        if self._cookie_file:
            jar = http.cookiejar.MozillaCookieJar(self._cookie_file)
            try:
                # junk session cookies: drop cookies without an expiry
                jar.load(ignore_discard=not self._cookie_session, ignore_expires=True)
            except (OSError, http.cookiejar.LoadError) as e:
                raise FileAccessError(f"Cannot read cookie file {self._cookie_file}: {e}") from e
            session.cookies.update(jar)
        for text in self._cookies:
            for pair in text.split(";"):
                name, sep, value = pair.strip().partition("=")
                if sep and name:
                    session.cookies.set(name, value)

    def _save_cookies(self, session: requests.Session) -> None:
        jar = http.cookiejar.MozillaCookieJar(self._cookie_jar)
        for cookie in session.cookies:
            jar.set_cookie(cookie)
        try:
            jar.save(ignore_discard=True, ignore_expires=True)
        except OSError as e:
            raise FileAccessError(f"Cannot write cookie jar {self._cookie_jar}: {e}") from e

    def _request_body(self) -> bytes | None:
        if self._upload_file:
            try:
                with open(self._upload_file, "rb") as f:
                    return f.read()
            except OSError as e:
                raise FileAccessError(f"Cannot read upload file {self._upload_file}: {e}") from e
        if self._post_fields is not None:
            return self._post_fields.encode("utf-8")
        return None

    def _read_body(self, resp: requests.Response) -> str:
        if not self._progress:
            return resp.text
        total = resp.headers.get("Content-Length")
        total_bytes = int(total) if total and total.isdigit() else None
        chunks = []
        done = 0
        for chunk in resp.iter_content(chunk_size=8192):
            chunks.append(chunk)
            done += len(chunk)
            if self._progress_callback:
                self._progress_callback(done, total_bytes)
        _LOGGER.info("Received %d bytes from %s", done, self._url)
        return b"".join(chunks).decode(resp.encoding or "utf-8", errors="replace")

    def perform(self) -> TransportResponse:
        """Send the configured request. A handle performs exactly once."""
        if self.performed:
            raise TransportConfigurationError("Transport already performed; build a fresh one")
        self.performed = True
        if not self._url:
            raise ExecutionError("No URL configured")

        method = self.effective_method
        headers = self._build_headers()
        session = self._session_factory()
        self._session = session
        if self._unrestricted_auth and hasattr(session, "trust_redirect_auth"):
            session.trust_redirect_auth = True
        if self._max_redirects is not None:
            session.max_redirects = self._max_redirects
        if self._unix_socket:
            adapter = UnixSocketAdapter(self._unix_socket)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        elif self._tcp_keepalive:
            adapter = KeepAliveAdapter()
            session.mount("http://", adapter)
            session.mount("https://", adapter)

        result = TransportResponse()
        try:
            self._load_cookies(session)
            kwargs = {
                "method": method,
                "url": self._url,
                "headers": headers,
                "data": self._request_body(),
                "auth": self._build_auth(),
                "allow_redirects": self._follow_location,
                "verify": self._ca_info or True,
                "timeout": self._timeout,
                # the peer certificate is only reachable before the body is read
                "stream": self._progress or self._cert_info,
            }
            if self._verbose:
                result.trace.append(f"> {method} {urlsplit(self._url).path or '/'}")
                result.trace.extend(f"> {k}: {v}" for k, v in headers.items())
            for flag, on in (
                ("proxy tunnel", self._proxy_tunnel),
                ("url globbing off", self._globoff),
            ):
                if on:
                    _LOGGER.debug("%s has no requests equivalent; recorded only", flag)

            start = time.monotonic()
            resp = session.request(**kwargs)
            if self._cert_info:
                result.trace.extend(peer_certificate_lines(resp))
            result.status_code = resp.status_code
            result.reason = resp.reason or ""
            result.headers = dict(resp.headers)
            result.body = self._read_body(resp)
            result.elapsed_ms = (time.monotonic() - start) * 1000

            if self._verbose:
                result.trace.append(f"< HTTP {resp.status_code} {result.reason}".rstrip())
                result.trace.extend(f"< {k}: {v}" for k, v in resp.headers.items())
            if self._cookie_jar:
                self._save_cookies(session)
        except requests.exceptions.Timeout:
            raise ExecutionTimeout(f"Request timed out after {self._timeout}s") from None
        except requests.exceptions.ConnectionError as e:
            raise ExecutionError(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ExecutionError(f"Request failed: {e}") from e
        finally:
            self.close()

        if self._fail_on_error and result.status_code >= 400:
            raise ExecutionError(
                f"The requested URL returned error: {result.status_code}",
            )
        return result

    def close(self) -> None:
        """Close the live session, dropping any connection still in use."""
        session, self._session = self._session, None
        if session is not None:
            session.close()


# ── wget transport ──────────────────────────────────────────────────────


class WgetTransport:
    """Download handle that runs the wget binary."""

    def __init__(self, binary: str = "wget"):
        self.binary = binary
        self.performed = False
        self.warnings: list[str] = []
        self.include_headers = False
        self._url = ""
        self._output: str | None = None
        self._depth: int | None = None
        self._verbose = False
        self._custom_request: str | None = None
        self._timeout: float | None = None

    def reset_method(self) -> None:
        self._custom_request = None

    def custom_request(self, method: str | None) -> None:
        self._custom_request = method.upper() if method and method.upper() != "GET" else None

    def url(self, url: str) -> None:
        self._url = url

    def output(self, path: str) -> None:
        self._output = path

    def recursive(self, depth: int) -> None:
        if depth < 0:
            raise TransportConfigurationError(f"Recursive depth must be >= 0, got {depth}")
        self._depth = depth

    def verbose(self, on: bool) -> None:
        self._verbose = on

    def timeout(self, seconds: float | None) -> None:
        self._timeout = seconds

    def argv(self) -> list[str]:
        args = [self.binary, self._url]
        if self._verbose:
            args.append("-v")
        if self._custom_request:
            args.append(f"--method={self._custom_request}")
        if self._output:
            args.extend(["-O", self._output])
        if self._depth:
            args.extend(["-r", f"--level={self._depth}"])
        return args

    def perform(self) -> TransportResponse:
        if self.performed:
            raise TransportConfigurationError("Transport already performed; build a fresh one")
        self.performed = True
        if not self._url:
            raise ExecutionError("No URL configured")

        args = self.argv()
        _LOGGER.debug("Running %s", " ".join(args))
        start = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError:
            raise ExecutionError(f"{self.binary} not found on PATH") from None
        except subprocess.TimeoutExpired:
            raise ExecutionTimeout(f"Download timed out after {self._timeout}s") from None

        if proc.returncode != 0:
            detail = proc.stderr.strip() or f"exit status {proc.returncode}"
            raise ExecutionError(f"{self.binary} failed: {detail}")

        result = TransportResponse()
        result.body = proc.stdout or proc.stderr
        result.elapsed_ms = (time.monotonic() - start) * 1000
        return result
