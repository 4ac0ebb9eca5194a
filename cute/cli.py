"""cute CLI - build, run, save and share curl/wget style commands."""

import contextlib
import logging
import sys
from pathlib import Path

import click

from cute.errors import CuteError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

TOOL_HELP = """\
cute: build HTTP requests and downloads option by option.

Runs the request, shows the equivalent curl/wget command, and keeps a
store of saved commands and API keys you can replay later.

\b
MODES
─────
  Request:    cute METHOD URL [options]
  Download:   cute --download URL [-o FILE] [--depth N]
  Store:      cute --saved | --replay ID | --keys

\b
REQUESTS
────────
  cute GET https://api.example.com/users
  cute POST https://api.example.com/users -d '{"name":"test"}' --content-type json
  cute DELETE https://api.example.com/users/123 --bearer '${API_TOKEN}'
  cute https://example.com                       # METHOD defaults to GET

  A JSON response body is pretty-printed. Add -i to prepend the status
  line and response headers, -o FILE to write the response to a file.

\b
AUTH
────
  -u user:pass            Basic auth
  -u user:pass --digest   Digest auth
  --bearer TOKEN          Authorization: Bearer header
  --ntlm [-u user:pass]   NTLM handshake, with a login when given
  --spnego                Kerberos negotiation (install cute[spnego])
  --aws-sigv4             Needs AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY
                          and AWS_REGION in the environment or env_file;
                          AWS_SERVICE overrides the service taken from the host

  The password is everything after the LAST ':' of the login.

\b
SHOW / SHARE
────────────
  --show-command   Print the full curl command instead of running it
  --share          Print a minimal copy/paste command instead of running it

\b
SAVED COMMANDS AND KEYS
───────────────────────
  cute GET https://x/api --save --name "List users"
  cute --saved                    List saved commands
  cute --replay 3                 Run saved command 3 again
  cute --delete-saved 3
  cute POST https://x/login --bearer T --save-token
  cute --keys | --add-key KEY | --delete-key ID
  cute --import-postman collection.json

\b
CONFIG
──────
  .cute.yaml in CWD, then ~/.cute/config.yaml (or -c FILE):

  \b
  defaults:
    db_path: ~/.cute/cute.sqlite
    timeout: 30
    env_file: .env
    wget: wget
    user_agent: my-agent/1.0
    headers:
      Accept: application/json

  ${VAR} references in URLs, headers, bodies and credentials are
  resolved from the environment and env_file.

  cute --init              Scaffold .cute.yaml in CWD
"""


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("method", required=False)
@click.argument("url", required=False)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .cute.yaml in CWD, then ~/.cute/config.yaml.",
)
@click.option(
    "-H",
    "--header",
    multiple=True,
    help="HTTP header as 'Name: Value'. Repeatable.",
)
@click.option("-d", "--data", default=None, help="Request body.")
@click.option("-o", "--output", "outfile", default=None, help="Write the response to FILE.")
@click.option("-T", "--upload-file", default=None, help="Upload FILE as the request body.")
@click.option("-u", "--user", default=None, help="Login as 'user:password'.")
@click.option("--digest", is_flag=True, default=False, help="Use digest auth with -u.")
@click.option("--bearer", default=None, metavar="TOKEN", help="Bearer token.")
@click.option("--ntlm", is_flag=True, default=False, help="Select NTLM auth.")
@click.option("--spnego", is_flag=True, default=False, help="Select SPNEGO auth.")
@click.option("--aws-sigv4", is_flag=True, default=False, help="Select AWS SigV4 auth.")
@click.option("-L", "--location", is_flag=True, default=False, help="Follow redirects.")
@click.option("--max-redirs", type=int, default=None, help="Maximum redirects to follow.")
@click.option("-A", "--user-agent", default=None, help="User-Agent header.")
@click.option("-e", "--referer", default=None, help="Referer header.")
@click.option("--cacert", default=None, help="CA bundle used to verify the peer.")
@click.option("--unix-socket", default=None, help="Connect through a unix socket.")
@click.option("--cookie-jar", default=None, help="Write cookies to FILE after the request.")
@click.option(
    "-b",
    "--cookie",
    multiple=True,
    help="Cookie file to read, or 'name=value' cookie data. Repeatable.",
)
@click.option(
    "-j",
    "--junk-session-cookies",
    is_flag=True,
    default=False,
    help="Start a new cookie session (ignore session cookies from -b FILE).",
)
@click.option("-i", "--include", is_flag=True, default=False, help="Include response headers.")
@click.option(
    "--content-type",
    default=None,
    metavar="KIND",
    help="Content-Type: json, xml, form, multipart, text, html or a MIME type.",
)
@click.option("-f", "--fail", is_flag=True, default=False, help="Fail on HTTP errors (>= 400).")
@click.option("-p", "--proxytunnel", is_flag=True, default=False, help="Tunnel through the proxy.")
@click.option("--certinfo", is_flag=True, default=False, help="Request certificate info.")
@click.option("-g", "--globoff", is_flag=True, default=False, help="Turn off URL globbing.")
@click.option("--keepalive", is_flag=True, default=False, help="Use TCP keep-alive.")
@click.option(
    "--anyauth",
    is_flag=True,
    default=False,
    help="Keep credentials on redirects to other hosts.",
)
@click.option("--progress-bar", is_flag=True, default=False, help="Report download progress.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show the request trace.")
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds before giving up. Default: 30.",
)
@click.option("--save", is_flag=True, default=False, help="Save the command after it runs.")
@click.option(
    "--save-token",
    is_flag=True,
    default=False,
    help="Save the credential secret to the key store after it runs.",
)
@click.option("--name", default=None, help="Name for a saved command.")
@click.option("--description", default=None, help="Description for a saved command.")
@click.option("--download", "download_url", default=None, metavar="URL", help="Download URL with wget.")
@click.option("--depth", type=int, default=None, help="Recursive download depth.")
@click.option(
    "--show-command",
    is_flag=True,
    default=False,
    help="Print the command string instead of running it.",
)
@click.option(
    "--share",
    is_flag=True,
    default=False,
    help="Print a minimal shareable command instead of running it.",
)
@click.option("--saved", "show_saved", is_flag=True, default=False, help="List saved commands.")
@click.option("--replay", type=int, default=None, metavar="ID", help="Run a saved command.")
@click.option("--delete-saved", type=int, default=None, metavar="ID", help="Delete a saved command.")
@click.option("--keys", "show_keys", is_flag=True, default=False, help="List saved keys.")
@click.option("--add-key", default=None, metavar="KEY", help="Save an API key.")
@click.option("--delete-key", type=int, default=None, metavar="ID", help="Delete a saved key.")
@click.option(
    "--import-postman",
    default=None,
    metavar="FILE",
    help="Import a Postman v2 collection into saved commands.",
)
@click.option(
    "--init",
    "do_init",
    is_flag=True,
    default=False,
    help="Scaffold .cute.yaml in CWD.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="ERROR",
    help="Logging level for diagnostics on stderr.",
)
def main(method, url, config_file, **opts):
    """Build, run, save and share HTTP requests and downloads."""
    from cute.command import METHODS
    from cute.core import (
        load_config,
        load_env,
        resolve_config_path,
        resolve_db_path,
        resolve_timeout,
    )

    logging.basicConfig(
        level=opts["log_level"].upper(),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # --- Load config ---
    config_path = resolve_config_path(config_file)
    config = load_config(config_path)
    defaults = config.get("defaults", {})
    config_dir = config.get("_config_dir")

    env = load_env(defaults.get("env_file"), str(config_dir or "."))
    db_path = resolve_db_path(defaults, config_dir)
    timeout = resolve_timeout(defaults, opts["timeout"])

    # --- Dispatch ---

    if opts["do_init"]:
        _cmd_init()
        return

    try:
        if opts["show_saved"]:
            _cmd_saved(db_path)
            return

        if opts["delete_saved"] is not None:
            _cmd_delete_saved(db_path, opts["delete_saved"])
            return

        if opts["replay"] is not None:
            _cmd_replay(db_path, opts["replay"], env, timeout, opts)
            return

        if opts["show_keys"]:
            _cmd_keys(db_path)
            return

        if opts["add_key"]:
            _cmd_add_key(db_path, opts["add_key"])
            return

        if opts["delete_key"] is not None:
            _cmd_delete_key(db_path, opts["delete_key"])
            return

        if opts["import_postman"]:
            _cmd_import_postman(db_path, opts["import_postman"])
            return

        if opts["download_url"]:
            _cmd_download(opts["download_url"], defaults, env, timeout, db_path, opts)
            return

        if method and not url and method.upper() not in METHODS:
            method, url = "GET", method

        if method and url:
            _cmd_request(method, url, defaults, env, timeout, db_path, opts)
            return
    except CuteError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    # Nothing matched, show help
    ctx = click.get_current_context()
    click.echo(ctx.get_help())
    ctx.exit(1)


# ── Subcommand implementations ──────────────────────────────────────────


def _cmd_request(method, url, defaults, env, timeout, db_path, opts):
    from cute.command import HttpCommand

    with ProgressBar() as progress:
        command = HttpCommand(env=env, progress_callback=progress)
        command.set_method(method)
        _apply_request_options(command, url, defaults, env, opts)
        _run_or_show(command, timeout, db_path, opts)


def _cmd_download(url, defaults, env, timeout, db_path, opts):
    from cute.command import DownloadCommand
    from cute.core import resolve_value
    from cute.options import Option, OptionKind

    command = DownloadCommand(env=env, binary=defaults.get("wget"))
    command.set_url(resolve_value(url, env))
    if opts["outfile"]:
        command.add_option(Option(OptionKind.OUTFILE, opts["outfile"]))
    if opts["depth"] is not None:
        command.add_option(Option(OptionKind.RECURSIVE_DEPTH, opts["depth"]))
    if opts["verbose"]:
        command.add_option(Option.flag(OptionKind.VERBOSE))
    _apply_save_options(command, opts)
    _run_or_show(command, timeout, db_path, opts)


def _cmd_replay(db_path, command_id, env, timeout, opts):
    from cute.persistence import CommandStore

    store = CommandStore(db_path)
    saved = store.get_command(command_id)
    if saved is None:
        click.echo(f"ERROR: Saved command {command_id} not found.", err=True)
        sys.exit(1)
    command = saved.load(env=env, store=store)
    click.echo(f"  {saved.command}", err=True)
    with ProgressBar() as progress:
        if command.kind == "http":
            command.progress_callback = progress
        _run_or_show(command, timeout, db_path, opts, store=store)


def _cmd_saved(db_path):
    from cute.persistence import CommandStore

    saved = CommandStore(db_path).list_commands()
    if not saved:
        click.echo("No saved commands.")
        return
    for entry in saved:
        label = f"  {entry.name}" if entry.name else ""
        click.echo(f"  [{entry.id}]{label}  {entry.command}")
        if entry.description:
            click.echo(f"        {entry.description}")


def _cmd_delete_saved(db_path, command_id):
    from cute.persistence import CommandStore

    if not CommandStore(db_path).delete_command(command_id):
        click.echo(f"ERROR: Saved command {command_id} not found.", err=True)
        sys.exit(1)
    click.echo(f"Deleted saved command {command_id}.")


def _cmd_keys(db_path):
    from cute.persistence import CommandStore

    keys = CommandStore(db_path).list_keys()
    if not keys:
        click.echo("No saved keys.")
        return
    for key in keys:
        click.echo(f"  [{key.id}]  {key.key}  ({key.created_at})")


def _cmd_add_key(db_path, key):
    from cute.persistence import CommandStore

    key_id = CommandStore(db_path).save_key(key)
    click.echo(f"Saved key {key_id}.")


def _cmd_delete_key(db_path, key_id):
    from cute.persistence import CommandStore

    if not CommandStore(db_path).delete_key(key_id):
        click.echo(f"ERROR: Saved key {key_id} not found.", err=True)
        sys.exit(1)
    click.echo(f"Deleted key {key_id}.")


def _cmd_import_postman(db_path, path):
    from cute.persistence import CommandStore
    from cute.postman import import_collection

    ids = import_collection(path, CommandStore(db_path))
    click.echo(f"Imported {len(ids)} command(s) from {path}.")


def _cmd_init():
    """Scaffold .cute.yaml in CWD."""
    config_file = Path(".cute.yaml")

    if config_file.exists():
        click.echo(f"  {config_file} (skipped, already exists)")
    else:
        config_file.write_text(_generate_config())
        click.echo(f"  {config_file} (created)")

    click.echo("\nProject initialized. Run 'cute --help' to get started.")


# ── Helpers ──────────────────────────────────────────────────────────────


def _apply_request_options(command, url, defaults, env, opts):
    """Translate CLI flags into options on an HTTP command."""
    from cute.core import resolve_value
    from cute.options import Option, OptionKind, parse_header

    command.set_url(resolve_value(url, env))

    for name, value in (defaults.get("headers") or {}).items():
        command.add_option(Option.header(str(name), resolve_value(str(value), env)))
    for text in opts["header"]:
        try:
            name, value = parse_header(text)
        except ValueError as e:
            click.echo(f"ERROR: {e}", err=True)
            sys.exit(1)
        command.add_option(Option.header(name, resolve_value(value, env)))

    credential = _credential_from_flags(opts, env)
    if credential is not None:
        command.set_credential(credential)

    values = {
        OptionKind.REQUEST_BODY: resolve_value(opts["data"], env),
        OptionKind.OUTFILE: opts["outfile"],
        OptionKind.UPLOAD_FILE: opts["upload_file"],
        OptionKind.MAX_REDIRECTS: opts["max_redirs"],
        OptionKind.USER_AGENT: opts["user_agent"] or defaults.get("user_agent"),
        OptionKind.REFERRER: opts["referer"],
        OptionKind.CA_PATH: opts["cacert"],
        OptionKind.UNIX_SOCKET: opts["unix_socket"],
        OptionKind.COOKIE_JAR: opts["cookie_jar"],
        OptionKind.CONTENT_HEADER_KIND: opts["content_type"],
    }
    for kind, value in values.items():
        if value is not None:
            command.add_option(Option(kind, value))

    for cookie in opts["cookie"]:
        kind = OptionKind.COOKIE_PATH if Path(cookie).is_file() else OptionKind.NEW_COOKIE
        command.add_option(Option(kind, cookie))

    flags = {
        OptionKind.FOLLOW_REDIRECTS: opts["location"],
        OptionKind.NEW_COOKIE_SESSION: opts["junk_session_cookies"],
        OptionKind.ENABLE_RESPONSE_HEADERS: opts["include"],
        OptionKind.FAIL_ON_ERROR: opts["fail"],
        OptionKind.PROXY_TUNNEL: opts["proxytunnel"],
        OptionKind.CERT_INFO: opts["certinfo"],
        OptionKind.MATCH_WILDCARD: opts["globoff"],
        OptionKind.TCP_KEEP_ALIVE: opts["keepalive"],
        OptionKind.UNRESTRICTED_AUTH: opts["anyauth"],
        OptionKind.PROGRESS_BAR: opts["progress_bar"],
        OptionKind.VERBOSE: opts["verbose"],
    }
    for kind, on in flags.items():
        if on:
            command.add_option(Option.flag(kind))

    _apply_save_options(command, opts)


def _apply_save_options(command, opts):
    from cute.options import Option, OptionKind

    if opts["save"]:
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
    if opts["save_token"]:
        command.add_option(Option.flag(OptionKind.SAVE_TOKEN))
    command.name = opts["name"]
    command.description = opts["description"]


def _credential_from_flags(opts, env):
    """Return the single credential the flags select, or None."""
    from cute.auth import Credential
    from cute.core import resolve_value

    chosen = []
    if opts["bearer"]:
        chosen.append(("bearer", resolve_value(opts["bearer"], env)))
    login = resolve_value(opts["user"], env) if opts["user"] else None
    if opts["digest"] and login is None:
        click.echo("ERROR: --digest needs a login (-u user:password).", err=True)
        sys.exit(1)
    if opts["ntlm"]:
        # curl style: -u goes with --ntlm when both are given
        chosen.append(("ntlm", login))
        if opts["digest"]:
            chosen.append(("digest", login))
    elif login is not None:
        chosen.append(("digest" if opts["digest"] else "basic", login))
    for scheme in ("spnego", "aws_sigv4"):
        if opts[scheme]:
            chosen.append((scheme, None))

    if not chosen:
        return None
    if len(chosen) > 1:
        names = ", ".join(name for name, _ in chosen)
        click.echo(f"ERROR: Choose one auth scheme, got: {names}.", err=True)
        sys.exit(1)
    name, secret = chosen[0]
    return Credential.from_choice(name, secret)


def _run_or_show(command, timeout, db_path, opts, store=None):
    """Print the command (--show-command / --share) or execute it."""
    from cute.command import run_command
    from cute.persistence import CommandStore

    if opts["show_command"] or opts["share"]:
        if opts["show_command"]:
            click.echo(command.render_command_string())
        if opts["share"]:
            shared = command.shareable.render()
            if shared is None:
                click.echo("ERROR: Nothing to share, the command has no URL.", err=True)
                sys.exit(1)
            click.echo(shared)
        return

    if store is None and (command.save_command or command.save_token):
        store = CommandStore(db_path)

    text = run_command(command, timeout, store)

    result = command.last_result
    if result is not None:
        for line in result.trace:
            click.echo(line, err=True)
    if command.kind == "http" and command.outfile:
        click.echo(f"  Response written to {command.outfile}", err=True)
    elif text:
        click.echo(text)
    for msg in command.warnings:
        click.echo(f"WARNING: {msg}", err=True)
    if command.saved_id is not None:
        click.echo(f"  Saved as command {command.saved_id}", err=True)


class ProgressBar:
    """Progress callback that drives a click progress bar on stderr.

    The bar is opened on the first report, sized from the response's
    Content-Length when there is one.
    """

    def __init__(self):
        self.bar = None
        self._stack = contextlib.ExitStack()

    def __call__(self, done, total):
        if self.bar is None:
            self.bar = self._stack.enter_context(
                click.progressbar(
                    # an unsized iterable puts click into pulse mode
                    iterable=None if total else iter(int, 1),
                    length=total or None,
                    label="Receiving",
                    show_pos=True,
                    file=sys.stderr,
                ),
            )
        self.bar.update(done - self.bar.pos)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._stack.close()
        return False

def _generate_config() -> str:
    """Return .cute.yaml content string."""
    return """\
# cute configuration
# See: cute --help

defaults:
  # db_path: ~/.cute/cute.sqlite
  # env_file: .env
  timeout: 30
  wget: wget
  headers:
    Accept: application/json
  # user_agent: cute/1.0
"""
