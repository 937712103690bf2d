"""Shared fixtures for the certctl test suite."""

import subprocess
import sys
from pathlib import Path

import pytest

# Make the top-level certctl module importable without installing it
_ROOT = str(Path(__file__).resolve().parent.parent)
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

import certctl  # noqa: E402


class CommandLog(list):
    def __init__(self):
        super().__init__()
        self.failing = []


@pytest.fixture(autouse=True)
def quiet_globals(monkeypatch):
    """Reset the module-level output switches main() sets."""
    monkeypatch.setattr(certctl, "IS_TEST", False)
    monkeypatch.setattr(certctl, "IS_CRON", False)
    monkeypatch.setattr(certctl, "VERBOSITY", 1)


@pytest.fixture()
def make_settings(tmp_path):
    """Return a factory for Settings pointing at temporary directories."""

    def factory(**overrides):
        values = {
            "email": "admin@example.com",
            "webroot": str(tmp_path / "webroot"),
            "letsencryptDir": str(tmp_path / "letsencrypt"),
            "nginxConfig": (str(tmp_path / "nginx"),),
            "certbot": ("certbot",),
        }
        values.update(overrides)
        return certctl.Settings(**values)

    return factory


@pytest.fixture()
def commands(monkeypatch):
    """Record every command certctl runs instead of running it.

    Commands whose text contains any string in ``commands.failing`` fail
    with exit status 1.
    """
    ran = CommandLog()

    def fake_run(thing, timeout=None):
        ran.append(thing)
        text = thing if isinstance(thing, str) else " ".join(thing)
        if any(marker in text for marker in ran.failing):
            raise subprocess.CalledProcessError(1, thing, b"", b"simulated failure\n")

        return subprocess.CompletedProcess(thing, 0, b"PARAMETERS\n", b"")

    monkeypatch.setattr(certctl, "run", fake_run)
    return ran


@pytest.fixture()
def nginx_dir(tmp_path):
    """Directory for nginx config files written by a test."""
    path = tmp_path / "nginx"
    path.mkdir()
    return path
