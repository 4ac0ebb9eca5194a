"""cute auth - credentials and how they turn into transport configuration."""

import enum
import logging
import os
from dataclasses import dataclass, field

from cute.errors import InvalidCredentialFormat, SerializationError

_LOGGER = logging.getLogger(__name__)

AWS_KEY_VARS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")
AWS_REGION_VARS = ("AWS_REGION", "AWS_DEFAULT_REGION")


class AuthKind(enum.Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    DIGEST = "digest"
    NTLM = "ntlm"
    AWS_SIGV4 = "aws_sigv4"
    SPNEGO = "spnego"


_SECRET_KINDS = frozenset({AuthKind.BASIC, AuthKind.BEARER, AuthKind.DIGEST})
# Kinds whose secret is a "user:password" login; optional for NTLM.
_LOGIN_KINDS = frozenset({AuthKind.BASIC, AuthKind.DIGEST, AuthKind.NTLM})
_KEPT_SECRET_KINDS = _SECRET_KINDS | _LOGIN_KINDS


@dataclass(frozen=True)
class Credential:
    """An auth selection plus its secret material.

    secret is "user:password" for BASIC and DIGEST, the token for BEARER,
    an optional login for NTLM, and None for SPNEGO and AWS_SIGV4.
    """

    kind: AuthKind
    secret: str | None = None

    @classmethod
    def none(cls) -> "Credential":
        return cls(AuthKind.NONE)

    @classmethod
    def from_choice(cls, name: str, secret: str | None = None) -> "Credential":
        """Build a credential from a scheme name like 'basic' or 'aws-sigv4'.

        Logins are checked here, so a bad one fails before anything runs.
        """
        key = name.strip().lower().replace("-", "_")
        try:
            kind = AuthKind(key)
        except ValueError:
            raise InvalidCredentialFormat(f"Unknown auth scheme: {name!r}") from None
        if kind in _SECRET_KINDS and not secret:
            raise InvalidCredentialFormat(f"{kind.name} auth requires a secret")
        if kind not in _KEPT_SECRET_KINDS or not secret:
            return cls(kind)
        return cls(kind, secret).validate()

    def validate(self) -> "Credential":
        """Raise InvalidCredentialFormat unless the login splits cleanly."""
        if self.kind in _LOGIN_KINDS and self.secret is not None:
            parse_login(self.secret)
        return self

    @property
    def has_secret(self) -> bool:
        return self.kind in _SECRET_KINDS and bool(self.secret)

    def render(self) -> str | None:
        """Command-line text for this credential."""
        if self.kind is AuthKind.BASIC:
            return f"-u {self.secret}"
        if self.kind is AuthKind.DIGEST:
            return f"--digest -u {self.secret}"
        if self.kind is AuthKind.BEARER:
            return f'-H "Authorization: Bearer {self.secret}"'
        if self.kind is AuthKind.NTLM:
            return f"--ntlm -u {self.secret}" if self.secret else "--ntlm"
        if self.kind is AuthKind.AWS_SIGV4:
            return "--aws-sigv4"
        if self.kind is AuthKind.SPNEGO:
            return "--spnego"
        return None

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "secret": self.secret}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Credential":
        if data is None:
            return cls.none()
        if not isinstance(data, dict):
            raise SerializationError(f"Malformed credential: {data!r}")
        try:
            kind = AuthKind(data.get("kind", "none"))
        except ValueError:
            raise SerializationError(f"Unknown auth kind: {data.get('kind')!r}") from None
        secret = data.get("secret")
        if secret is not None and not isinstance(secret, str):
            raise SerializationError(f"Credential secret must be a string, got {secret!r}")
        if kind in _SECRET_KINDS and not secret:
            raise SerializationError(f"{kind.name} credential is missing its secret")
        return cls(kind, secret if kind in _KEPT_SECRET_KINDS else None)


@dataclass
class AuthConfig:
    """Transport-ready auth settings produced by resolve_credential."""

    scheme: str | None = None
    username: str | None = None
    password: str | None = None
    header: str | None = None
    region: str | None = None
    service: str | None = None
    session_token: str | None = None
    warnings: list[str] = field(default_factory=list)


def parse_login(login: str) -> tuple[str, str]:
    """Split a "user:password" login.

    The username is everything before the first colon and the password is
    everything after the last one, so "alice:p:ss" gives ("alice", "ss").
    Saved commands rely on this split, keep it as is.
    """
    if ":" not in login:
        raise InvalidCredentialFormat(
            "Login must look like 'user:password' (no ':' found)",
        )
    first = login.index(":")
    last = login.rindex(":")
    return login[:first], login[last + 1 :]


def missing_aws_env(env: dict[str, str] | None = None) -> list[str]:
    """Return the AWS variables SigV4 signing needs that are not set."""
    env = os.environ if env is None else env
    missing = [name for name in AWS_KEY_VARS if not env.get(name)]
    if not any(env.get(name) for name in AWS_REGION_VARS):
        missing.append(AWS_REGION_VARS[0])
    return missing


def resolve_credential(
    credential: Credential | None,
    env: dict[str, str] | None = None,
) -> AuthConfig:
    """Turn a credential into transport auth settings.

    - basic / digest: transport-native negotiation with the parsed login
    - bearer: no native auth, an Authorization header is injected instead
    - ntlm: NTLM handshake, with the parsed login when one was given
    - spnego: Kerberos negotiation from the ambient ticket
    - aws_sigv4: request signing with keys and region read from env
    - none: nothing
    """
    if credential is None or credential.kind is AuthKind.NONE:
        return AuthConfig()

    kind = credential.kind
    if kind in _LOGIN_KINDS and credential.secret:
        username, password = parse_login(credential.secret)
        return AuthConfig(scheme=kind.value, username=username, password=password)
    if kind in (AuthKind.BASIC, AuthKind.DIGEST):
        raise InvalidCredentialFormat(f"{kind.name} auth requires a login")

    if kind is AuthKind.BEARER:
        return AuthConfig(header=f"Authorization: Bearer {credential.secret}")

    if kind is not AuthKind.AWS_SIGV4:
        return AuthConfig(scheme=kind.value)

    env = os.environ if env is None else env
    config = AuthConfig(
        scheme=kind.value,
        username=env.get("AWS_ACCESS_KEY_ID"),
        password=env.get("AWS_SECRET_ACCESS_KEY"),
        region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or "",
        service=env.get("AWS_SERVICE"),
        session_token=env.get("AWS_SESSION_TOKEN"),
    )
    missing = missing_aws_env(env)
    if missing:
        msg = f"AWS SigV4 selected but {', '.join(missing)} not set"
        _LOGGER.warning(msg)
        config.warnings.append(msg)
    return config
