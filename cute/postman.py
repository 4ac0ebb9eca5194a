"""cute postman - import a Postman v2 collection into saved commands."""

import json
import logging
from pathlib import Path

from cute.auth import Credential
from cute.command import METHODS, HttpCommand
from cute.errors import FileAccessError, InvalidCredentialFormat, SerializationError
from cute.options import Option, OptionKind
from cute.persistence import to_storable_form

_LOGGER = logging.getLogger(__name__)


def load_collection(path: str | Path) -> dict:
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise FileAccessError(f"Cannot read collection {path}: {e}") from e
    except ValueError as e:
        raise SerializationError(f"Collection {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("item"), list):
        raise SerializationError(f"Collection {path} has no 'item' list")
    return data


def iter_requests(items: list, prefix: str = ""):
    """Yield (display name, request dict) for every request, walking folders."""
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name") or ""
        full_name = f"{prefix}/{name}" if prefix and name else (name or prefix)
        if isinstance(item.get("item"), list):
            yield from iter_requests(item["item"], full_name)
        elif isinstance(item.get("request"), dict):
            yield full_name, item["request"]


def _raw_url(url) -> str:
    if isinstance(url, str):
        return url
    if isinstance(url, dict):
        return url.get("raw") or ""
    return ""


def _pairs(entries) -> list[tuple[str, str]]:
    pairs = []
    for entry in entries or []:
        if not isinstance(entry, dict) or entry.get("disabled"):
            continue
        key = entry.get("key")
        if key:
            pairs.append((str(key), str(entry.get("value", ""))))
    return pairs


def _credential(auth) -> Credential | None:
    """Map a Postman auth block onto a credential, when there is one we know."""
    if not isinstance(auth, dict):
        return None
    kind = auth.get("type")
    fields = dict(_pairs(auth.get(kind))) if isinstance(auth.get(kind), list) else {}
    try:
        if kind == "bearer" and fields.get("token"):
            return Credential.from_choice("bearer", fields["token"])
        if kind in ("basic", "digest", "ntlm") and fields.get("username"):
            login = f"{fields['username']}:{fields.get('password', '')}"
            return Credential.from_choice(kind, login)
        if kind == "ntlm":
            return Credential.from_choice("ntlm")
        if kind == "awsv4":
            return Credential.from_choice("aws_sigv4")
    except InvalidCredentialFormat as e:
        _LOGGER.warning("Skipping auth for imported request: %s", e)
    return None


def command_from_request(request: dict, transport_factory=None) -> HttpCommand:
    """Build an HTTP command from one Postman request object."""
    command = HttpCommand(transport_factory=transport_factory)
    command.set_url(_raw_url(request.get("url")))

    for name, value in _pairs(request.get("header")):
        command.add_option(Option.header(name, value))
    for name, value in _pairs(request.get("cookie")):
        command.add_option(Option(OptionKind.NEW_COOKIE, f"{name}={value}"))

    body = request.get("body")
    if isinstance(body, dict) and body.get("mode", "raw") == "raw" and body.get("raw"):
        command.add_option(Option(OptionKind.REQUEST_BODY, body["raw"]))

    credential = _credential(request.get("auth"))
    if credential is not None:
        command.set_credential(credential)

    method = str(request.get("method") or "GET").upper()
    if method not in METHODS:
        _LOGGER.warning("Unsupported method %s in collection, using GET", method)
        method = "GET"
    command.set_method(method)
    return command


def import_collection(path: str | Path, store, transport_factory=None) -> list[int]:
    """Save one command per request in the collection. Returns the new ids."""
    data = load_collection(path)
    collection_name = (data.get("info") or {}).get("name")
    ids = []
    for name, request in iter_requests(data["item"]):
        command = command_from_request(request, transport_factory)
        if not command.url:
            _LOGGER.warning("Skipping %r: request has no URL", name)
            continue
        text, payload = to_storable_form(command)
        ids.append(
            store.save_command(
                text,
                payload,
                name=name or None,
                description=collection_name,
            ),
        )
    _LOGGER.info("Imported %d request(s) from %s", len(ids), path)
    return ids
