"""cute command - owns an option set, configures a transport, executes it."""

import json
import logging
import threading
from collections.abc import Callable
from concurrent import futures
from pathlib import Path

from cute.auth import AuthKind, Credential, resolve_credential
from cute.errors import (
    ExecutionTimeout,
    FileAccessError,
    PersistenceError,
    TransportConfigurationError,
)
from cute.options import Option, OptionKind, OptionSet, content_type_for
from cute.shareable import ShareableCommand
from cute.transport import HttpTransport, TransportResponse, WgetTransport

_LOGGER = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")

# Options the command itself acts on; the transport never sees them.
COMMAND_LEVEL_KINDS = frozenset(
    {
        OptionKind.URL,
        OptionKind.OUTFILE,
        OptionKind.SAVE_COMMAND,
        OptionKind.SAVE_TOKEN,
        OptionKind.RESPONSE,
    },
)


def format_body(text: str) -> str:
    """Pretty-print JSON bodies, return anything else unchanged."""
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (ValueError, TypeError):
        return text


class Command:
    """A request or download being assembled option by option.

    Durable data is the method plus the option set; the transport handle
    is rebuilt from it on every execute and is never serialized.
    """

    kind = "command"
    binary = ""

    def __init__(self, transport_factory=None, env=None, store=None):
        self._transport_factory = transport_factory or self.default_transport
        self.env = env
        self.store = store
        self.method = "GET"
        self.options = OptionSet()
        self.shareable = ShareableCommand(command=self.binary)
        self.name: str | None = None
        self.description: str | None = None
        self.timeout: float | None = None
        self.response: str | None = None
        self.last_result: TransportResponse | None = None
        self.saved_id: int | None = None
        self.warnings: list[str] = []
        self.cancelled = threading.Event()
        self._pending_headers: list[str] = []
        self._cmd: str | None = None
        self.transport = self._transport_factory()
        self._configure_method(self.transport)

    def default_transport(self):
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(method={self.method!r}, options={self.options!r})"

    # ── option mutation ─────────────────────────────────────────────────

    def add_option(self, option: Option) -> None:
        self.options.add(option)
        self._cmd = None
        self._mirror(option.kind)
        if option.kind is OptionKind.HEADERS:
            self.shareable.push_header(option.value)

    def remove_option(self, kind: OptionKind) -> None:
        self.options.remove(kind)
        self._cmd = None
        self._mirror(kind)
        if kind is OptionKind.HEADERS:
            self.shareable.clear_headers()

    def _mirror(self, kind: OptionKind) -> None:
        if kind is OptionKind.URL:
            self.shareable.set_url(self.url)
        elif kind is OptionKind.OUTFILE:
            self.shareable.set_outfile(self.outfile or "")
        elif kind is OptionKind.VERBOSE:
            self.shareable.set_verbose(self.options.has(OptionKind.VERBOSE))

    def set_url(self, url: str) -> None:
        self.add_option(Option(OptionKind.URL, url))

    def set_credential(self, credential: Credential) -> None:
        credential.validate()
        if credential.kind is AuthKind.NONE:
            self.remove_option(OptionKind.AUTH)
        else:
            self.add_option(Option.auth(credential))

    def set_method(self, method: str) -> None:
        """Switch method and fully re-issue the transport's method config."""
        method = method.upper()
        if method not in METHODS:
            raise TransportConfigurationError(f"Unsupported method: {method}")
        self.method = method
        self._cmd = None
        self._configure_method(self.transport)

    def _configure_method(self, transport) -> None:
        raise NotImplementedError

    # ── read-only accessors ─────────────────────────────────────────────

    def _value(self, kind: OptionKind):
        option = self.options.get(kind)
        return option.value if option else None

    @property
    def url(self) -> str:
        return self._value(OptionKind.URL) or ""

    @property
    def outfile(self) -> str | None:
        return self._value(OptionKind.OUTFILE)

    @property
    def upload_file(self) -> str | None:
        return self._value(OptionKind.UPLOAD_FILE)

    @property
    def credential(self) -> Credential:
        return self._value(OptionKind.AUTH) or Credential.none()

    @property
    def save_command(self) -> bool:
        return self.options.has(OptionKind.SAVE_COMMAND)

    @property
    def save_token(self) -> bool:
        return self.options.has(OptionKind.SAVE_TOKEN)

    def get_url(self) -> str:
        return self.url

    def get_upload_file(self) -> str | None:
        return self.upload_file

    def get_token(self) -> str | None:
        credential = self.credential
        return credential.secret if credential.has_secret else None

    def has_auth(self) -> bool:
        return self.credential.kind is not AuthKind.NONE

    def has_unix_socket(self) -> bool:
        return self.options.has(OptionKind.UNIX_SOCKET)

    # ── transport configuration ─────────────────────────────────────────

    def _dispatch(self) -> dict[OptionKind, Callable]:
        raise NotImplementedError

    def apply_options(self, options: OptionSet, transport=None) -> None:
        """Configure the transport from options, one call per option."""
        transport = self.transport if transport is None else transport
        dispatch = self._dispatch()
        self._pending_headers = []
        for option in options:
            if option.kind in COMMAND_LEVEL_KINDS:
                continue
            handler = dispatch.get(option.kind)
            if handler is None:
                _LOGGER.debug("%s ignores %s", type(self).__name__, option.kind.name)
                continue
            handler(transport, option.value)
        self._finalize(transport)

    def _finalize(self, transport) -> None:
        """Hook run after all options are applied."""

    def _build_transport(self):
        transport = self._transport_factory()
        transport.url(self.url)
        if self.timeout is not None:
            transport.timeout(self.timeout)
        self._configure_method(transport)
        self.apply_options(self.options, transport)
        return transport

    def prepare(self):
        """Replace the handle with a freshly configured one."""
        self.transport = self._build_transport()
        return self.transport

    # ── execution ───────────────────────────────────────────────────────

    def execute(self, store=None) -> str | None:
        """Run the command once and return the captured response text.

        Transport failures raise ExecutionError. Saving the command or its
        token afterwards never fails the request; problems end up in
        self.warnings. A run cancelled while the transport was busy leaves
        the command untouched and returns None.
        """
        store = self.store if store is None else store
        self.warnings = []
        transport = self.prepare()
        result = transport.perform()
        if self.cancelled.is_set():
            _LOGGER.debug("Discarding response of cancelled %s", type(self).__name__)
            return None
        self.warnings.extend(transport.warnings)
        self.last_result = result

        text = format_body(result.body)
        if transport.include_headers:
            text = f"{result.header_block()}\n\n{text}"
        self.response = text
        self._after_perform()

        if self.save_command:
            self._save_command(store)
        if self.save_token:
            self._save_token(store)
        return text

    def _after_perform(self) -> None:
        """Hook run once a response has been captured."""

    def cancel(self) -> None:
        """Abandon the running execute and close its transport."""
        self.cancelled.set()
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def _warn(self, msg: str) -> None:
        _LOGGER.warning(msg)
        self.warnings.append(msg)

    def _save_command(self, store) -> None:
        from cute.persistence import to_storable_form

        if store is None:
            self._warn("Command not saved: no store configured")
            return
        text, data = to_storable_form(self)
        try:
            self.saved_id = store.save_command(
                text,
                data,
                name=self.name,
                description=self.description,
            )
        except PersistenceError as e:
            self._warn(f"Command not saved: {e}")

    def _save_token(self, store) -> None:
        token = self.get_token()
        if token is None:
            return
        if store is None:
            self._warn("Token not saved: no store configured")
            return
        try:
            store.save_key(token)
        except PersistenceError as e:
            self._warn(f"Token not saved: {e}")

    def write_response_to_file(self, path: str) -> None:
        if self.response is None:
            raise FileAccessError("No response captured to write")
        try:
            Path(path).write_text(self.response)
        except OSError as e:
            raise FileAccessError(f"Cannot write response to {path}: {e}") from e

    # ── rendering ───────────────────────────────────────────────────────

    def render_command_string(self) -> str:
        if self._cmd is None:
            self._cmd = self._render()
        return self._cmd

    def _render(self) -> str:
        raise NotImplementedError

    def _spawn(self) -> "Command":
        return type(self)(
            transport_factory=self._transport_factory,
            env=self.env,
            store=self.store,
        )

    def clone(self) -> "Command":
        """Copy durable data onto a new command with its own handle."""
        other = self._spawn()
        other.name = self.name
        other.description = self.description
        other.timeout = self.timeout
        for option in self.options:
            other.add_option(option)
        other.set_method(self.method)
        return other


class HttpCommand(Command):
    """HTTP request driven through HttpTransport."""

    kind = "http"
    binary = "curl"

    def __init__(self, transport_factory=None, env=None, store=None, progress_callback=None):
        self.progress_callback = progress_callback
        super().__init__(transport_factory=transport_factory, env=env, store=store)

    def default_transport(self):
        return HttpTransport()

    def _configure_method(self, transport) -> None:
        # Method flags are sticky on the handle: a POST flag left behind
        # turns a later PATCH into a POST. Always start from a clean slate.
        transport.reset_method()
        if self.method == "GET":
            transport.get(True)
        elif self.method == "POST":
            transport.post(True)
        elif self.method == "HEAD":
            transport.nobody(True)
        else:
            transport.custom_request(self.method)

    def _apply_auth(self, transport, credential: Credential) -> None:
        config = resolve_credential(credential, self.env)
        if config.scheme:
            transport.http_auth(config.scheme, config.username, config.password)
        if config.region is not None:
            transport.aws_sigv4(config.region, config.service, config.session_token)
        if config.header:
            self._pending_headers.append(config.header)
        self.warnings.extend(config.warnings)

    def _dispatch(self) -> dict[OptionKind, Callable]:
        return {
            OptionKind.VERBOSE: lambda t, _: t.verbose(True),
            OptionKind.HEADERS: lambda t, v: self._pending_headers.append(f"{v[0]}: {v[1]}"),
            OptionKind.AUTH: self._apply_auth,
            OptionKind.UNIX_SOCKET: lambda t, v: t.unix_socket(v),
            OptionKind.FOLLOW_REDIRECTS: lambda t, _: t.follow_location(True),
            OptionKind.COOKIE_JAR: lambda t, v: t.cookie_jar(v),
            OptionKind.COOKIE_PATH: lambda t, v: t.cookie_file(v),
            OptionKind.NEW_COOKIE: lambda t, v: t.cookie(v),
            OptionKind.NEW_COOKIE_SESSION: lambda t, _: t.cookie_session(True),
            OptionKind.ENABLE_RESPONSE_HEADERS: lambda t, _: t.show_header(True),
            OptionKind.CONTENT_HEADER_KIND: lambda t, v: self._pending_headers.append(
                f"Content-Type: {content_type_for(v)}",
            ),
            OptionKind.PROGRESS_BAR: lambda t, _: t.progress(True, self.progress_callback),
            OptionKind.FAIL_ON_ERROR: lambda t, _: t.fail_on_error(True),
            OptionKind.PROXY_TUNNEL: lambda t, _: t.http_proxy_tunnel(True),
            OptionKind.CA_PATH: lambda t, v: t.ca_info(v),
            OptionKind.CERT_INFO: lambda t, _: t.cert_info(True),
            OptionKind.USER_AGENT: lambda t, v: t.useragent(v),
            OptionKind.REFERRER: lambda t, v: t.referer(v),
            OptionKind.MATCH_WILDCARD: lambda t, _: t.url_globbing_off(True),
            OptionKind.TCP_KEEP_ALIVE: lambda t, _: t.tcp_keepalive(True),
            OptionKind.UNRESTRICTED_AUTH: lambda t, _: t.unrestricted_auth(True),
            OptionKind.MAX_REDIRECTS: lambda t, v: t.max_redirections(v),
            OptionKind.UPLOAD_FILE: lambda t, v: t.upload_file(v),
            OptionKind.REQUEST_BODY: lambda t, v: t.post_fields(v),
        }

    def _finalize(self, transport) -> None:
        # Bearer tokens arrive as headers, so the list is only handed over
        # once every option (auth included) has been applied.
        transport.http_headers(self._pending_headers)

    def _after_perform(self) -> None:
        if self.outfile:
            self.write_response_to_file(self.outfile)

    def _render(self) -> str:
        parts = [self.binary, "-X", self.method]
        if self.url:
            parts.append(self.url)
        headers = []
        for option in self.options:
            if option.kind is OptionKind.HEADERS:
                name, value = option.value
                headers.append(f'-H "{name}:{value}"')
                continue
            text = option.render()
            if text:
                parts.append(text)
        parts.extend(headers)
        return " ".join(parts)


class DownloadCommand(Command):
    """File download driven through the wget binary.

    Honors URL, OUTFILE, VERBOSE and RECURSIVE_DEPTH; HTTP-only options
    such as headers and auth are kept but not applied.
    """

    kind = "download"
    binary = "wget"

    def __init__(self, transport_factory=None, env=None, store=None, binary: str | None = None):
        if binary:
            self.binary = binary
        super().__init__(transport_factory=transport_factory, env=env, store=store)

    def default_transport(self):
        return WgetTransport(self.binary)

    def _configure_method(self, transport) -> None:
        transport.reset_method()
        transport.custom_request(self.method)

    def _dispatch(self) -> dict[OptionKind, Callable]:
        return {
            OptionKind.VERBOSE: lambda t, _: t.verbose(True),
            OptionKind.RECURSIVE_DEPTH: lambda t, v: t.recursive(v),
        }

    def _build_transport(self):
        transport = super()._build_transport()
        if self.outfile:
            transport.output(self.outfile)
        return transport

    def _render(self) -> str:
        transport = WgetTransport(self.binary)
        transport.url(self.url)
        self._configure_method(transport)
        self.apply_options(self.options, transport)
        if self.outfile:
            transport.output(self.outfile)
        return " ".join(arg for arg in transport.argv() if arg)

    def _spawn(self) -> "Command":
        return DownloadCommand(
            transport_factory=self._transport_factory,
            env=self.env,
            store=self.store,
            binary=self.binary,
        )


def run_command(command: Command, timeout: float | None, store=None) -> str | None:
    """Execute on a worker thread and give up after timeout seconds.

    The timeout is also handed to the transport for its socket reads. On
    expiry the command is cancelled: its transport is closed and whatever
    the worker gets back afterwards is dropped unsaved.
    """
    command.cancelled.clear()
    if timeout is None:
        return command.execute(store)
    command.timeout = timeout
    pool = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="cute-exec")
    future = pool.submit(command.execute, store)
    try:
        return future.result(timeout=timeout)
    except futures.TimeoutError:
        command.cancel()
        raise ExecutionTimeout(f"Command did not finish within {timeout}s") from None
    finally:
        pool.shutdown(wait=False)
