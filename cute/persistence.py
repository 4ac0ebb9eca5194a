"""cute persistence - storable command form, replay, and the SQLite store."""

import datetime
import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from cute.auth import AuthKind, Credential
from cute.command import METHODS, Command, DownloadCommand, HttpCommand
from cute.errors import PersistenceError, SerializationError
from cute.options import Option, OptionKind

_LOGGER = logging.getLogger(__name__)

COMMAND_TYPES = {"http": HttpCommand, "download": DownloadCommand}

# Per-run requests, not part of what gets replayed.
TRANSIENT_KINDS = frozenset({OptionKind.SAVE_COMMAND, OptionKind.SAVE_TOKEN})


def to_storable_form(command: Command) -> tuple[str, str]:
    """Return (rendered command string, JSON of the durable data)."""
    data = {
        "type": command.kind,
        "method": command.method,
        "options": [
            o.to_dict() for o in command.options if o.kind not in TRANSIENT_KINDS
        ],
        "credential": command.credential.to_dict(),
    }
    if isinstance(command, DownloadCommand):
        data["binary"] = command.binary
    return command.render_command_string(), json.dumps(data, sort_keys=True)


def from_storable_form(
    data: str | dict,
    transport_factory=None,
    env=None,
    store=None,
) -> Command:
    """Rebuild a command from its JSON form.

    A fresh transport is created, every stored option is replayed in order,
    then method and credential are re-applied and the handle configured.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise SerializationError(f"Stored command is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SerializationError("Stored command must be a JSON object")

    command_type = data.get("type", "http")
    cls = COMMAND_TYPES.get(command_type)
    if cls is None:
        raise SerializationError(f"Unknown command type: {command_type!r}")

    method = data.get("method", "GET")
    if not isinstance(method, str) or method.upper() not in METHODS:
        raise SerializationError(f"Unknown method in stored command: {method!r}")

    raw_options = data.get("options", [])
    if not isinstance(raw_options, list):
        raise SerializationError("Stored options must be a list")
    options = [Option.from_dict(o) for o in raw_options]
    credential = Credential.from_dict(data.get("credential"))

    kwargs = {"transport_factory": transport_factory, "env": env, "store": store}
    if cls is DownloadCommand and data.get("binary"):
        kwargs["binary"] = data["binary"]
    command = cls(**kwargs)

    for option in options:
        command.add_option(option)
    command.set_method(method)
    if credential.kind is not AuthKind.NONE and command.credential != credential:
        command.set_credential(credential)
    command.prepare()
    return command


# ── Store ───────────────────────────────────────────────────────────────


@dataclass
class SavedCommand:
    id: int
    command: str
    command_json: str
    name: str | None
    description: str | None
    created_at: str

    def load(self, transport_factory=None, env=None, store=None) -> Command:
        command = from_storable_form(
            self.command_json,
            transport_factory=transport_factory,
            env=env,
            store=store,
        )
        command.name = self.name
        command.description = self.description
        return command


@dataclass
class SavedKey:
    id: int
    key: str
    created_at: str


class CommandStore:
    """Saved commands and keys in a SQLite file."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self.initialize()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open store {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._connect()
        try:
            with conn:
                return conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Store operation failed: {e}") from e

    def initialize(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS commands (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        command TEXT NOT NULL,
                        command_json TEXT NOT NULL,
                        name TEXT,
                        description TEXT,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS keys (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        key TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );
                    """,
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot initialize store {self.db_path}: {e}") from e
        _LOGGER.debug("Store ready at %s", self.db_path)

    # Commands

    def save_command(
        self,
        command: str,
        command_json: str,
        name: str | None = None,
        description: str | None = None,
    ) -> int:
        cursor = self._execute(
            "INSERT INTO commands (command, command_json, name, description, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (command, command_json, name, description, _now()),
        )
        return cursor.lastrowid

    def list_commands(self) -> list[SavedCommand]:
        rows = self._execute(
            "SELECT id, command, command_json, name, description, created_at "
            "FROM commands ORDER BY id",
        ).fetchall()
        return [SavedCommand(**dict(row)) for row in rows]

    def get_command(self, command_id: int) -> SavedCommand | None:
        row = self._execute(
            "SELECT id, command, command_json, name, description, created_at "
            "FROM commands WHERE id = ?",
            (command_id,),
        ).fetchone()
        return SavedCommand(**dict(row)) if row else None

    def delete_command(self, command_id: int) -> bool:
        cursor = self._execute("DELETE FROM commands WHERE id = ?", (command_id,))
        return cursor.rowcount > 0

    # Keys

    def save_key(self, key: str) -> int:
        cursor = self._execute(
            "INSERT INTO keys (key, created_at) VALUES (?, ?)",
            (key, _now()),
        )
        return cursor.lastrowid

    def list_keys(self) -> list[SavedKey]:
        rows = self._execute("SELECT id, key, created_at FROM keys ORDER BY id").fetchall()
        return [SavedKey(**dict(row)) for row in rows]

    def delete_key(self, key_id: int) -> bool:
        cursor = self._execute("DELETE FROM keys WHERE id = ?", (key_id,))
        return cursor.rowcount > 0


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()

