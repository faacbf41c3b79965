# scripts/tests/conftest.py
import os
import sys
import time

import pytest

MODULE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../automation/system_maintenance"))
if MODULE_DIR not in sys.path:
    sys.path.insert(0, MODULE_DIR)

from maintenance_log import MaintenanceLog  # noqa: E402
from process_runner import CommandError, CommandInvocation, CommandResult  # noqa: E402


class Exit:
    """Scripted process exit for FakeRunner."""

    def __init__(self, code=0, stdout="", stderr=""):
        self.code = code
        self.stdout = stdout
        self.stderr = stderr


def ok(stdout=""):
    return Exit(0, stdout)


def fail(code, stderr="", stdout=""):
    return Exit(code, stdout, stderr)


class FakeRunner:
    """Stands in for ProcessRunner; responses are keyed by executable name.

    A response is an Exit, an exception instance to raise, or a list of those consumed
    in order. Executables without a scripted response exit 0 with no output.
    """

    def __init__(self, responses=None):
        self.responses = {key: (list(value) if isinstance(value, list) else value)
                          for key, value in (responses or {}).items()}
        self.calls = []

    def _next(self, executable):
        response = self.responses.get(executable, ok())
        if isinstance(response, list):
            return response.pop(0) if response else ok()
        return response

    async def invoke(self, executable, args=None):
        invocation = CommandInvocation(executable, tuple(args or []))
        self.calls.append((invocation, time.monotonic()))
        response = self._next(executable)
        if isinstance(response, BaseException):
            raise response
        if response.code != 0:
            raise CommandError(invocation, response.code, response.stdout, response.stderr)
        return CommandResult(invocation=invocation, stdout=response.stdout, stderr=response.stderr)

    def executables(self):
        return [invocation.executable for invocation, _ in self.calls]

    def commands(self):
        return [(invocation.executable,) + invocation.args for invocation, _ in self.calls]


@pytest.fixture
def log(tmp_path):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return MaintenanceLog(log_dir / "SystemMaintenance-test.log")
