"""cute options - the vocabulary of request options and how they merge."""

import enum
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from cute.auth import Credential
from cute.errors import SerializationError


class OptionKind(enum.Enum):
    VERBOSE = "verbose"
    HEADERS = "headers"
    URL = "url"
    OUTFILE = "outfile"
    SAVE_COMMAND = "save_command"
    SAVE_TOKEN = "save_token"
    RESPONSE = "response"
    AUTH = "auth"
    UNIX_SOCKET = "unix_socket"
    FOLLOW_REDIRECTS = "follow_redirects"
    COOKIE_JAR = "cookie_jar"
    COOKIE_PATH = "cookie_path"
    NEW_COOKIE = "new_cookie"
    NEW_COOKIE_SESSION = "new_cookie_session"
    ENABLE_RESPONSE_HEADERS = "enable_response_headers"
    CONTENT_HEADER_KIND = "content_header_kind"
    PROGRESS_BAR = "progress_bar"
    FAIL_ON_ERROR = "fail_on_error"
    PROXY_TUNNEL = "proxy_tunnel"
    CA_PATH = "ca_path"
    CERT_INFO = "cert_info"
    USER_AGENT = "user_agent"
    REFERRER = "referrer"
    MATCH_WILDCARD = "match_wildcard"
    TCP_KEEP_ALIVE = "tcp_keep_alive"
    UNRESTRICTED_AUTH = "unrestricted_auth"
    MAX_REDIRECTS = "max_redirects"
    UPLOAD_FILE = "upload_file"
    REQUEST_BODY = "request_body"
    RECURSIVE_DEPTH = "recursive_depth"


class MergeClass(enum.Enum):
    REPLACE = "replace"
    TOGGLE = "toggle"
    APPEND = "append"


_TOGGLE_KINDS = frozenset(
    {
        OptionKind.VERBOSE,
        OptionKind.SAVE_COMMAND,
        OptionKind.SAVE_TOKEN,
        OptionKind.FOLLOW_REDIRECTS,
        OptionKind.PROGRESS_BAR,
        OptionKind.FAIL_ON_ERROR,
        OptionKind.PROXY_TUNNEL,
        OptionKind.CERT_INFO,
        OptionKind.MATCH_WILDCARD,
        OptionKind.TCP_KEEP_ALIVE,
        OptionKind.UNRESTRICTED_AUTH,
        OptionKind.ENABLE_RESPONSE_HEADERS,
        OptionKind.NEW_COOKIE_SESSION,
    },
)

_APPEND_KINDS = frozenset({OptionKind.HEADERS, OptionKind.NEW_COOKIE})

_INT_KINDS = frozenset({OptionKind.MAX_REDIRECTS, OptionKind.RECURSIVE_DEPTH})

# Short names accepted for CONTENT_HEADER_KIND; anything else is used as-is.
CONTENT_TYPES = {
    "json": "application/json",
    "xml": "application/xml",
    "form": "application/x-www-form-urlencoded",
    "multipart": "multipart/form-data",
    "text": "text/plain",
    "html": "text/html",
}

# Flag text for kinds that render as "<flag>" or "<flag> <value>".
_FLAGS = {
    OptionKind.VERBOSE: "-v",
    OptionKind.OUTFILE: "-o",
    OptionKind.UPLOAD_FILE: "-T",
    OptionKind.COOKIE_JAR: "--cookie-jar",
    OptionKind.COOKIE_PATH: "-b",
    OptionKind.NEW_COOKIE_SESSION: "-j",
    OptionKind.ENABLE_RESPONSE_HEADERS: "-i",
    OptionKind.FAIL_ON_ERROR: "-f",
    OptionKind.PROXY_TUNNEL: "-p",
    OptionKind.CERT_INFO: "--certinfo",
    OptionKind.TCP_KEEP_ALIVE: "--keepalive",
    OptionKind.REFERRER: "-e",
    OptionKind.CA_PATH: "--cacert",
    OptionKind.MAX_REDIRECTS: "--max-redirs",
    OptionKind.USER_AGENT: "-A",
    OptionKind.REQUEST_BODY: "-d",
    OptionKind.FOLLOW_REDIRECTS: "-L",
    OptionKind.UNIX_SOCKET: "--unix-socket",
    OptionKind.MATCH_WILDCARD: "-g",
    OptionKind.PROGRESS_BAR: "--progress-bar",
    OptionKind.UNRESTRICTED_AUTH: "--anyauth",
}

# Kinds that never show up in a rendered command string.
UNRENDERED_KINDS = frozenset(
    {
        OptionKind.URL,
        OptionKind.RESPONSE,
        OptionKind.SAVE_COMMAND,
        OptionKind.SAVE_TOKEN,
        OptionKind.HEADERS,
    },
)


def merge_class(kind: OptionKind) -> MergeClass:
    """Return how a new option of this kind merges with an existing one."""
    if kind in _TOGGLE_KINDS:
        return MergeClass.TOGGLE
    if kind in _APPEND_KINDS:
        return MergeClass.APPEND
    return MergeClass.REPLACE


def content_type_for(kind: str) -> str:
    """Map a content kind like 'json' to its MIME type."""
    return CONTENT_TYPES.get(kind.lower(), kind)


def parse_header(text: str) -> tuple[str, str]:
    """Parse 'Name: Value' into a (name, value) pair.

    Raises ValueError when there is no colon or the name is empty.
    """
    if ":" not in text:
        raise ValueError(f"Header must look like 'Name: Value', got {text!r}")
    name, value = text.split(":", 1)
    name = name.strip()
    if not name:
        raise ValueError(f"Header name is empty in {text!r}")
    return name, value.strip()


@dataclass(frozen=True)
class Option:
    """One user-selectable configuration unit.

    value is None for toggle kinds, a (name, value) tuple for HEADERS,
    a Credential for AUTH, an int for counts and a str otherwise.
    """

    kind: OptionKind
    value: Any = None

    @classmethod
    def flag(cls, kind: OptionKind) -> "Option":
        if merge_class(kind) is not MergeClass.TOGGLE:
            raise ValueError(f"{kind.name} is not a flag option")
        return cls(kind)

    @classmethod
    def header(cls, name: str, value: str) -> "Option":
        return cls(OptionKind.HEADERS, (name, value))

    @classmethod
    def auth(cls, credential: Credential) -> "Option":
        return cls(OptionKind.AUTH, credential)

    def render(self) -> str | None:
        """Return the command-line text for this option, or None."""
        kind = self.kind
        if kind in UNRENDERED_KINDS or kind is OptionKind.RECURSIVE_DEPTH:
            return None
        if kind is OptionKind.AUTH:
            return self.value.render()
        if kind is OptionKind.NEW_COOKIE:
            return f'-b "{self.value}"'
        if kind is OptionKind.CONTENT_HEADER_KIND:
            return f'-H "Content-Type: {content_type_for(self.value)}"'
        flag = _FLAGS[kind]
        if self.value is None:
            return flag
        return f"{flag} {self.value}"

    def to_dict(self) -> dict:
        if self.kind is OptionKind.AUTH:
            value: Any = self.value.to_dict()
        elif self.kind is OptionKind.HEADERS:
            value = list(self.value)
        else:
            value = self.value
        return {"kind": self.kind.value, "value": value}

    @classmethod
    def from_dict(cls, data: dict) -> "Option":
        if not isinstance(data, dict) or "kind" not in data:
            raise SerializationError(f"Malformed option entry: {data!r}")
        try:
            kind = OptionKind(data["kind"])
        except ValueError:
            raise SerializationError(f"Unknown option kind: {data['kind']!r}") from None
        value = data.get("value")

        if kind is OptionKind.AUTH:
            return cls(kind, Credential.from_dict(value))
        if kind is OptionKind.HEADERS:
            if not isinstance(value, list | tuple) or len(value) != 2:
                raise SerializationError(f"Header option needs [name, value], got {value!r}")
            return cls(kind, (str(value[0]), str(value[1])))
        if merge_class(kind) is MergeClass.TOGGLE:
            return cls(kind)
        if kind in _INT_KINDS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise SerializationError(f"{kind.name} needs an integer, got {value!r}")
            return cls(kind, value)
        if not isinstance(value, str):
            raise SerializationError(f"{kind.name} needs a string, got {value!r}")
        return cls(kind, value)


class OptionSet:
    """Ordered collection of options that enforces per-kind merge rules."""

    def __init__(self, options=None):
        self._options: list[Option] = []
        for option in options or ():
            self.add(option)

    def __iter__(self) -> Iterator[Option]:
        return iter(list(self._options))

    def __len__(self) -> int:
        return len(self._options)

    def __eq__(self, other) -> bool:
        if not isinstance(other, OptionSet):
            return NotImplemented
        return self._options == other._options

    def __repr__(self) -> str:
        return f"OptionSet({self._options!r})"

    def has(self, kind: OptionKind) -> bool:
        return any(o.kind is kind for o in self._options)

    def get(self, kind: OptionKind) -> Option | None:
        for option in self._options:
            if option.kind is kind:
                return option
        return None

    def get_all(self, kind: OptionKind) -> list[Option]:
        return [o for o in self._options if o.kind is kind]

    def add(self, option: Option) -> None:
        """Add an option following its kind's merge class.

        Replace kinds overwrite the existing entry in place, toggle kinds
        are removed when already present (select once adds, twice removes),
        append kinds are always appended.
        """
        mc = merge_class(option.kind)
        if mc is MergeClass.APPEND:
            self._options.append(option)
            return

        for i, existing in enumerate(self._options):
            if existing.kind is option.kind:
                if mc is MergeClass.TOGGLE:
                    del self._options[i]
                else:
                    self._options[i] = option
                return
        self._options.append(option)

    def remove(self, kind: OptionKind) -> None:
        self._options = [o for o in self._options if o.kind is not kind]

    def copy(self) -> "OptionSet":
        clone = OptionSet()
        clone._options = list(self._options)
        return clone

    def to_list(self) -> list[dict]:
        return [o.to_dict() for o in self._options]

