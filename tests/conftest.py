"""Shared fixtures for cute tests."""

import pytest
from click.testing import CliRunner

from cute import command as command_module
from cute import core
from cute.transport import TransportResponse


def make_response(status_code=200, body="", headers=None, reason="OK"):
    r = TransportResponse()
    r.status_code = status_code
    r.reason = reason
    r.headers = headers or {}
    r.body = body
    r.elapsed_ms = 12.0
    return r


class StubTransport:
    """Records every configuration call and returns a canned response."""

    def __init__(self, response=None, error=None):
        self.calls = []
        self.warnings = []
        self.include_headers = False
        self.performed = False
        self._response = response if response is not None else make_response()
        self._error = error

    def show_header(self, on):
        self.include_headers = on
        self.calls.append(("show_header", (on,)))

    def perform(self):
        self.performed = True
        if self._error is not None:
            raise self._error
        return self._response

    def called(self, name):
        return [args for n, args in self.calls if n == name]

    def call_names(self):
        return [n for n, _ in self.calls]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        def record(*args):
            self.calls.append((name, args))

        return record


class StubFactory:
    """Transport factory handing out StubTransports."""

    def __init__(self):
        self.created = []
        self.response = make_response()
        self.error = None

    def __call__(self, *args):
        transport = StubTransport(self.response, self.error)
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]

    @property
    def performed(self):
        return [t for t in self.created if t.performed]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def stub_factory():
    return StubFactory()


@pytest.fixture
def stub_http(stub_factory, monkeypatch):
    """Make every HttpCommand built without a factory use stub transports."""
    monkeypatch.setattr(command_module, "HttpTransport", stub_factory)
    return stub_factory


@pytest.fixture(autouse=True)
def global_cute_dir(tmp_path, monkeypatch):
    """Point ~/.cute at a temp location so tests never touch the real store."""
    fake_global = tmp_path / "fake_home" / ".cute"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """A temp project directory as CWD."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project
