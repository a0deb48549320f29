"""
Shared pytest fixtures and helpers for the scpfetch test suite.
"""

import pathlib
import sys
import textwrap

import pytest

# Ensure the project root is importable regardless of how
# pytest is invoked so every test file can simply do
# ``import scpfetch`` or ``from scpfetch import ...``.
_PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from scpfetch import RunConfiguration  # noqa: E402 - imported after path fix


# ---------------------------------------------------------------------------
# Helper: fake transport that records calls instead of running scp
# ---------------------------------------------------------------------------

class FakeTransport:
    """Transport double that records each copy and fails chosen hosts.

    ``fail_hosts`` maps a host name to the error text raised for it.
    Successful copies write a small file so directory listings and
    overwrite behaviour can be observed.
    """

    def __init__(self, fail_hosts=None, raise_on=None):
        self.fail_hosts = dict(fail_hosts or {})
        self.raise_on = raise_on
        self.calls = []

    def copy(self, source, destination, secret, connect_timeout=30):
        self.calls.append(
            {
                "source": source,
                "destination": pathlib.Path(destination),
                "secret": secret,
                "connect_timeout": connect_timeout,
            }
        )
        host = source.split("@", 1)[1].split(":", 1)[0]
        if self.raise_on is not None and host == self.raise_on[0]:
            raise self.raise_on[1]
        if host in self.fail_hosts:
            raise RuntimeError(self.fail_hosts[host])
        pathlib.Path(destination).write_text(f"copied from {source}\n", encoding="utf-8")


def make_config(tmp_path, servers_file, default_user=None, quiet=True, dest_name="downloads"):
    """Build a RunConfiguration rooted in tmp_path."""
    return RunConfiguration(
        destination_directory=tmp_path / dest_name,
        default_user=default_user,
        config_file_path=servers_file,
        quiet=quiet,
    )


def no_secret(default_user, quiet=False):
    """Secret provider used where a prompt must never happen."""
    raise AssertionError("password prompt was not expected")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def servers_file_factory(tmp_path):
    """Factory that writes a Sourceservers.txt-style file and returns its Path."""
    def _factory(content: str, filename: str = "Sourceservers.txt") -> pathlib.Path:
        p = tmp_path / filename
        p.write_text(textwrap.dedent(content), encoding="utf-8")
        return p
    return _factory


@pytest.fixture
def bom_servers_file_factory(tmp_path):
    """Factory that writes a servers file with a UTF-8 BOM prefix."""
    def _factory(content: str) -> pathlib.Path:
        p = tmp_path / "bom_servers.txt"
        raw = b"\xef\xbb\xbf" + content.encode("utf-8")
        p.write_bytes(raw)
        return p
    return _factory


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def home_dir(tmp_path, monkeypatch):
    """Point HOME at a temporary directory so the default servers file is isolated."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home
