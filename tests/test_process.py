"""Tests for external command execution."""

import pytest

from devenv.errors import CommandTimeout, InstallFailed
from devenv.process import check_result, classify_output, run_command, which
from devenv.types import CommandResult


@pytest.mark.asyncio
async def test_run_command_captures_output():
    result = await run_command(["sh", "-c", "echo out; echo err >&2; exit 3"])

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


@pytest.mark.asyncio
async def test_run_command_layers_env(tmp_path):
    result = await run_command(["sh", "-c", "echo $DEVENV_TEST; pwd"], env={"DEVENV_TEST": "bar"}, cwd=tmp_path)

    lines = result.stdout.splitlines()
    assert lines[0] == "bar"
    assert lines[1] == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_run_command_timeout_kills_process():
    with pytest.raises(CommandTimeout) as exc_info:
        await run_command(["sleep", "5"], timeout=0.1)

    assert exc_info.value.kind == "command_timeout"
    assert isinstance(exc_info.value, TimeoutError)


@pytest.mark.asyncio
async def test_run_command_missing_executable():
    with pytest.raises(FileNotFoundError):
        await run_command(["definitely-not-a-real-binary-xyz"])


def test_which():
    assert which("sh") is not None
    assert which("sh", {"PATH": "/nonexistent"}) is None


@pytest.mark.parametrize(
    "output,transient",
    [
        ("curl: (6) Could not resolve host: nodejs.org", True),
        ("error: 503 Service Unavailable", True),
        ("npm ERR! code ECONNRESET", True),
        ("error: No such file or directory", False),
        ("", False),
    ],
)
def test_classify_output(output, transient):
    assert classify_output(output) is transient


def test_check_result_passes_success():
    result = CommandResult(0, "ok", "")
    assert check_result(result, "node", "20", "install") is result


def test_check_result_raises_classified_failure():
    with pytest.raises(InstallFailed) as exc_info:
        check_result(CommandResult(1, "", "Connection refused"), "node", "20", "npm install")

    error = exc_info.value
    assert error.transient
    assert error.kind == "install_failed_transient"
    assert error.details["returncode"] == 1
    assert "npm install exited with code 1" in str(error)

    with pytest.raises(InstallFailed) as exc_info:
        check_result(CommandResult(2, "bad flag", ""), "node", "20", "npm install")
    assert not exc_info.value.transient
    assert exc_info.value.kind == "install_failed_permanent"
