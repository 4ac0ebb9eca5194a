"""Tests for the command engine."""

import threading
from unittest.mock import MagicMock

import pytest

from cute.auth import AuthKind, Credential
from cute.command import DownloadCommand, HttpCommand, format_body, run_command
from cute.errors import (
    ExecutionError,
    ExecutionTimeout,
    FileAccessError,
    InvalidCredentialFormat,
    PersistenceError,
    TransportConfigurationError,
)
from cute.options import Option, OptionKind
from cute.persistence import CommandStore
from tests.conftest import StubTransport, make_response


def _http(factory, url="http://localhost:8080/api"):
    command = HttpCommand(transport_factory=factory)
    command.set_url(url)
    return command


# ── Method state ────────────────────────────────────────────────────────


class TestMethodFlags:
    """Method flags live on a real HttpTransport; nothing is performed."""

    def test_patch_after_post_clears_post_flag(self):
        command = HttpCommand()
        command.set_method("POST")
        command.set_method("PATCH")

        assert command.transport.method_flags == {
            "get": False,
            "post": False,
            "nobody": False,
            "custom_request": "PATCH",
        }
        assert command.transport.effective_method == "PATCH"

    def test_prepared_handle_keeps_method(self):
        command = HttpCommand()
        command.set_url("http://x")
        command.set_method("POST")
        command.set_method("DELETE")
        assert command.prepare().effective_method == "DELETE"

    def test_head_sets_nobody(self):
        command = HttpCommand()
        command.set_method("HEAD")
        assert command.transport.method_flags["nobody"] is True
        assert command.transport.effective_method == "HEAD"

    def test_get_after_put_is_get(self):
        command = HttpCommand()
        command.set_method("PUT")
        command.set_method("get")
        assert command.method == "GET"
        assert command.transport.effective_method == "GET"

    def test_explicit_get_with_body_stays_get(self):
        command = HttpCommand()
        command.set_url("http://x")
        command.add_option(Option(OptionKind.REQUEST_BODY, "{}"))
        assert command.prepare().effective_method == "GET"

    def test_unknown_method_rejected(self):
        command = HttpCommand()
        with pytest.raises(TransportConfigurationError, match="Unsupported method"):
            command.set_method("BREW")
        assert command.method == "GET"

    def test_every_change_reissues_configuration(self, stub_factory):
        command = HttpCommand(transport_factory=stub_factory)
        command.set_method("POST")
        command.set_method("PATCH")
        names = stub_factory.last.call_names()
        assert names == ["reset_method", "get", "reset_method", "post", "reset_method", "custom_request"]


# ── Execute ─────────────────────────────────────────────────────────────


class TestExecute:
    def test_json_body_pretty_printed(self, stub_factory):
        stub_factory.response = make_response(body='{"a":1}')
        command = _http(stub_factory)

        assert command.execute() == '{\n  "a": 1\n}'
        assert command.response == '{\n  "a": 1\n}'

    def test_plain_body_unchanged(self, stub_factory):
        stub_factory.response = make_response(body="hello\n")
        assert _http(stub_factory).execute() == "hello\n"

    def test_response_headers_prepended(self, stub_factory):
        stub_factory.response = make_response(
            body='{"a":1}',
            headers={"Content-Type": "application/json"},
        )
        command = _http(stub_factory)
        command.add_option(Option.flag(OptionKind.ENABLE_RESPONSE_HEADERS))

        text = command.execute()
        assert text.startswith("HTTP 200 OK\nContent-Type: application/json\n\n")
        assert text.endswith('{\n  "a": 1\n}')

    def test_fresh_transport_per_execute(self, stub_factory):
        command = _http(stub_factory)
        command.execute()
        command.execute()
        performed = stub_factory.performed
        assert len(performed) == 2
        assert performed[0] is not performed[1]

    def test_url_and_method_configured(self, stub_factory):
        command = _http(stub_factory)
        command.set_method("PUT")
        command.execute()
        transport = stub_factory.last
        assert transport.called("url") == [("http://localhost:8080/api",)]
        assert transport.called("custom_request") == [("PUT",)]

    def test_options_applied_in_order(self, stub_factory):
        command = _http(stub_factory)
        command.add_option(Option.flag(OptionKind.FOLLOW_REDIRECTS))
        command.add_option(Option(OptionKind.MAX_REDIRECTS, 3))
        command.add_option(Option(OptionKind.USER_AGENT, "agent/1"))
        command.execute()

        names = stub_factory.last.call_names()
        assert names.index("follow_location") < names.index("max_redirections")
        assert names.index("max_redirections") < names.index("useragent")
        assert stub_factory.last.called("max_redirections") == [(3,)]

    def test_command_level_options_not_sent_to_transport(self, stub_factory, tmp_path):
        command = _http(stub_factory)
        command.add_option(Option(OptionKind.OUTFILE, str(tmp_path / "out.txt")))
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
        command.execute()
        names = stub_factory.last.call_names()
        assert "output" not in names
        assert "outfile" not in names

    def test_headers_handed_over_once(self, stub_factory):
        command = _http(stub_factory)
        command.add_option(Option.header("X-A", "1"))
        command.add_option(Option.header("X-B", "2"))
        command.add_option(Option(OptionKind.CONTENT_HEADER_KIND, "json"))
        command.execute()
        assert stub_factory.last.called("http_headers") == [
            (["X-A: 1", "X-B: 2", "Content-Type: application/json"],),
        ]

    def test_transport_error_propagates(self, stub_factory):
        stub_factory.error = ExecutionError("Connection error: refused")
        command = _http(stub_factory)
        with pytest.raises(ExecutionError, match="Connection error"):
            command.execute()
        assert command.response is None

    def test_outfile_written(self, stub_factory, tmp_path):
        stub_factory.response = make_response(body='{"ok":true}')
        out = tmp_path / "out.json"
        command = _http(stub_factory)
        command.add_option(Option(OptionKind.OUTFILE, str(out)))
        command.execute()
        assert out.read_text() == '{\n  "ok": true\n}'

    def test_outfile_unwritable(self, stub_factory, tmp_path):
        command = _http(stub_factory)
        command.add_option(Option(OptionKind.OUTFILE, str(tmp_path / "missing" / "out.json")))
        with pytest.raises(FileAccessError):
            command.execute()

    def test_progress_callback_passed(self, stub_factory):
        def callback(done, total):
            return None

        command = HttpCommand(transport_factory=stub_factory, progress_callback=callback)
        command.set_url("http://x")
        command.add_option(Option.flag(OptionKind.PROGRESS_BAR))
        command.execute()
        assert stub_factory.last.called("progress") == [(True, callback)]

    def test_transport_warnings_collected(self, stub_factory):
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("aws_sigv4"))
        command.env = {}
        command.execute()
        assert any("AWS SigV4" in w for w in command.warnings)


# ── Auth ────────────────────────────────────────────────────────────────


class TestAuth:
    def test_basic_auth_configured(self, stub_factory):
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("basic", "alice:p:ss"))
        command.execute()
        assert stub_factory.last.called("http_auth") == [("basic", "alice", "ss")]

    def test_bearer_injected_before_headers_finalized(self, stub_factory):
        command = _http(stub_factory)
        command.add_option(Option.header("X-A", "1"))
        command.set_credential(Credential.from_choice("bearer", "tok"))
        command.execute()

        transport = stub_factory.last
        assert transport.called("http_auth") == []
        assert transport.called("http_headers") == [(["X-A: 1", "Authorization: Bearer tok"],)]

    def test_login_without_colon_fails_immediately(self, stub_factory):
        command = _http(stub_factory)
        with pytest.raises(InvalidCredentialFormat):
            command.set_credential(Credential(AuthKind.BASIC, "alice"))
        assert not command.has_auth()
        assert stub_factory.performed == []

    def test_aws_scope_configured(self, stub_factory):
        command = _http(stub_factory)
        command.env = {
            "AWS_ACCESS_KEY_ID": "AKIA",
            "AWS_SECRET_ACCESS_KEY": "secret",
            "AWS_DEFAULT_REGION": "us-east-1",
        }
        command.set_credential(Credential.from_choice("aws-sigv4"))
        command.execute()
        transport = stub_factory.last
        assert transport.called("http_auth") == [("aws_sigv4", "AKIA", "secret")]
        assert transport.called("aws_sigv4") == [("us-east-1", None, None)]
        assert command.warnings == []

    def test_ntlm_login_configured(self, stub_factory):
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("ntlm", "bob:pw"))
        command.execute()
        assert stub_factory.last.called("http_auth") == [("ntlm", "bob", "pw")]

    def test_clearing_credential(self, stub_factory):
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("bearer", "tok"))
        command.set_credential(Credential.none())
        assert not command.has_auth()

    def test_token_accessor(self, stub_factory):
        command = _http(stub_factory)
        assert command.get_token() is None
        command.set_credential(Credential.from_choice("bearer", "tok"))
        assert command.get_token() == "tok"
        command.set_credential(Credential.from_choice("ntlm"))
        assert command.get_token() is None


# ── Saving ──────────────────────────────────────────────────────────────


class TestSaveAfterExecute:
    def test_saved_to_store(self, stub_factory, tmp_path):
        store = CommandStore(tmp_path / "cute.sqlite")
        command = _http(stub_factory)
        command.name = "health"
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
        command.execute(store)

        saved = store.list_commands()
        assert len(saved) == 1
        assert saved[0].id == command.saved_id
        assert saved[0].name == "health"
        assert saved[0].command == "curl -X GET http://localhost:8080/api"

    def test_missing_store_is_a_warning(self, stub_factory):
        stub_factory.response = make_response(body="ok")
        command = _http(stub_factory)
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
        assert command.execute() == "ok"
        assert command.warnings == ["Command not saved: no store configured"]

    def test_store_failure_is_a_warning(self, stub_factory):
        store = MagicMock()
        store.save_command.side_effect = PersistenceError("disk full")
        command = _http(stub_factory)
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))

        command.execute(store)
        assert command.warnings == ["Command not saved: disk full"]
        assert command.saved_id is None

    def test_token_saved(self, stub_factory, tmp_path):
        store = CommandStore(tmp_path / "cute.sqlite")
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("bearer", "tok"))
        command.add_option(Option.flag(OptionKind.SAVE_TOKEN))
        command.execute(store)
        assert [k.key for k in store.list_keys()] == ["tok"]

    def test_token_failure_is_a_warning(self, stub_factory):
        store = MagicMock()
        store.save_key.side_effect = PersistenceError("locked")
        command = _http(stub_factory)
        command.set_credential(Credential.from_choice("bearer", "tok"))
        command.add_option(Option.flag(OptionKind.SAVE_TOKEN))
        command.execute(store)
        assert command.warnings == ["Token not saved: locked"]

    def test_store_given_at_construction(self, stub_factory, tmp_path):
        store = CommandStore(tmp_path / "cute.sqlite")
        command = HttpCommand(transport_factory=stub_factory, store=store)
        command.set_url("http://x")
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
        command.execute()
        assert len(store.list_commands()) == 1


# ── Rendering ───────────────────────────────────────────────────────────


class TestRender:
    def test_full_command(self, stub_factory):
        command = _http(stub_factory, "http://x")
        command.set_method("POST")
        command.add_option(Option.header("A", "B"))
        command.add_option(Option.flag(OptionKind.VERBOSE))
        command.add_option(Option(OptionKind.REQUEST_BODY, "name=test"))
        command.set_credential(Credential.from_choice("basic", "u:p"))

        assert command.render_command_string() == (
            'curl -X POST http://x -v -d name=test -u u:p -H "A:B"'
        )

    def test_cache_invalidated_on_mutation(self, stub_factory):
        command = _http(stub_factory, "http://x")
        assert command.render_command_string() == "curl -X GET http://x"
        command.add_option(Option.flag(OptionKind.FOLLOW_REDIRECTS))
        assert command.render_command_string() == "curl -X GET http://x -L"
        command.set_method("HEAD")
        assert command.render_command_string() == "curl -X HEAD http://x -L"

    def test_shareable_kept_in_sync(self, stub_factory):
        command = _http(stub_factory, "http://x")
        command.add_option(Option.flag(OptionKind.VERBOSE))
        command.add_option(Option.header("A", "B"))
        command.add_option(Option(OptionKind.OUTFILE, "out.txt"))
        assert command.shareable.render() == 'curl -v http://x -H "A:B" -o out.txt'

        command.add_option(Option.flag(OptionKind.VERBOSE))
        command.remove_option(OptionKind.HEADERS)
        assert command.shareable.render() == "curl http://x -o out.txt"

    def test_clone_has_own_handle(self, stub_factory):
        command = _http(stub_factory, "http://x")
        command.set_method("PATCH")
        command.add_option(Option.flag(OptionKind.VERBOSE))
        command.name = "copy me"

        other = command.clone()
        assert other.options == command.options
        assert other.method == "PATCH"
        assert other.name == "copy me"
        assert other.transport is not command.transport
        assert other.render_command_string() == command.render_command_string()

    def test_accessors(self, stub_factory):
        command = _http(stub_factory, "http://x")
        command.add_option(Option(OptionKind.UPLOAD_FILE, "data.bin"))
        command.add_option(Option(OptionKind.UNIX_SOCKET, "/run/app.sock"))
        assert command.get_url() == "http://x"
        assert command.get_upload_file() == "data.bin"
        assert command.has_unix_socket()


class TestFormatBody:
    def test_nested_json(self):
        assert format_body('{"a":[1,2]}') == '{\n  "a": [\n    1,\n    2\n  ]\n}'

    def test_invalid_json_returned_as_is(self):
        assert format_body("{nope") == "{nope"

    def test_empty(self):
        assert format_body("") == ""


# ── Download ────────────────────────────────────────────────────────────


class TestDownloadCommand:
    def test_render(self):
        command = DownloadCommand()
        command.set_url("http://x/f.zip")
        command.add_option(Option(OptionKind.OUTFILE, "f.zip"))
        command.add_option(Option(OptionKind.RECURSIVE_DEPTH, 2))
        assert command.render_command_string() == "wget http://x/f.zip -O f.zip -r --level=2"

    def test_http_only_options_not_rendered(self):
        command = DownloadCommand()
        command.set_url("http://x/f.zip")
        command.add_option(Option.header("A", "B"))
        assert command.render_command_string() == "wget http://x/f.zip"

    def test_custom_binary(self):
        command = DownloadCommand(binary="/opt/bin/wget")
        command.set_url("http://x")
        assert command.render_command_string().startswith("/opt/bin/wget http://x")
        assert command.clone().binary == "/opt/bin/wget"

    def test_execute_configures_output(self, stub_factory):
        stub_factory.response = make_response(body="saved f.zip")
        command = DownloadCommand(transport_factory=stub_factory)
        command.set_url("http://x/f.zip")
        command.add_option(Option(OptionKind.OUTFILE, "f.zip"))
        command.add_option(Option.flag(OptionKind.VERBOSE))

        assert command.execute() == "saved f.zip"
        transport = stub_factory.last
        assert transport.called("output") == [("f.zip",)]
        assert transport.called("verbose") == [(True,)]
        assert transport.called("http_headers") == []


# ── run_command ─────────────────────────────────────────────────────────


class TestRunCommand:
    def test_returns_response(self, stub_factory):
        stub_factory.response = make_response(body="done")
        command = _http(stub_factory)
        assert run_command(command, 5) == "done"
        assert stub_factory.last.called("timeout") == [(5,)]

    def test_no_timeout_runs_inline(self, stub_factory):
        command = _http(stub_factory)
        run_command(command, None)
        assert stub_factory.last.called("timeout") == []

    def test_times_out(self):
        release = threading.Event()

        class SlowTransport(StubTransport):
            def perform(self):
                release.wait(5)
                return make_response()

        command = HttpCommand(transport_factory=SlowTransport)
        command.set_url("http://x")
        try:
            with pytest.raises(ExecutionTimeout, match="did not finish"):
                run_command(command, 0.05)
        finally:
            release.set()

    def test_timed_out_run_is_not_saved(self, tmp_path):
        release = threading.Event()
        created = []

        class SlowTransport(StubTransport):
            def __init__(self):
                super().__init__(make_response(body="late"))
                created.append(self)

            def perform(self):
                release.wait(5)
                return super().perform()

        store = CommandStore(tmp_path / "cute.sqlite")
        command = HttpCommand(transport_factory=SlowTransport)
        command.set_url("http://x")
        command.add_option(Option.flag(OptionKind.SAVE_COMMAND))
        try:
            with pytest.raises(ExecutionTimeout):
                run_command(command, 0.1, store)
            assert command.cancelled.is_set()
            assert created[-1].called("close") == [()]
        finally:
            release.set()
        for thread in threading.enumerate():
            if thread.name.startswith("cute-exec"):
                thread.join(5)

        assert store.list_commands() == []
        assert command.response is None
        assert command.saved_id is None

        # the next run starts uncancelled
        assert run_command(command, 5, store) == "late"
        assert len(store.list_commands()) == 1
