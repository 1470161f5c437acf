"""Tests for shell-free subprocess execution."""

import asyncio
import gc
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sitebuilder.modules.sandbox import TIMEOUT_EXIT_CODE, capture_command, run_command


class RecordingLog:
    def __init__(self):
        self.lines = []

    async def __call__(self, level, message):
        self.lines.append((level, message))


@pytest.fixture
def on_log():
    return RecordingLog()


@pytest.mark.asyncio
async def test_streams_stdout_and_stderr(on_log):
    script = "import sys; print('hello'); print('Cloning into x', file=sys.stderr); print('boom', file=sys.stderr)"

    result = await run_command(sys.executable, ["-c", script], on_log=on_log)

    assert result.success is True
    assert result.exit_code == 0
    assert ("info", "hello") in on_log.lines
    assert ("warn", "Cloning into x") in on_log.lines
    assert ("error", "boom") in on_log.lines


@pytest.mark.asyncio
async def test_arguments_are_not_shell_interpreted(on_log):
    result = await run_command(
        sys.executable, ["-c", "import sys; print(sys.argv[1])", "$(whoami); echo pwned"], on_log=on_log
    )

    assert result.success
    assert on_log.lines == [("info", "$(whoami); echo pwned")]


@pytest.mark.asyncio
async def test_nonzero_exit_keeps_tail(on_log):
    script = "import sys\nfor i in range(30): print(i)\nsys.exit(3)"

    result = await run_command(sys.executable, ["-c", script], on_log=on_log)

    assert result.success is False
    assert result.exit_code == 3
    assert len(result.tail) == 20
    assert result.tail[-1] == "29"


@pytest.mark.asyncio
async def test_timeout_kills_process(on_log):
    result = await run_command(
        sys.executable, ["-c", "import time; time.sleep(30)"], on_log=on_log, timeout=0.5
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert on_log.lines[-1] == ("error", "Command timed out after 0.5s")


@pytest.mark.asyncio
async def test_env_and_cwd(on_log, tmp_path):
    script = "import os; print(os.environ['BUILD_MARKER']); print(os.getcwd())"

    result = await run_command(
        sys.executable, ["-c", script], on_log=on_log, cwd=str(tmp_path), env={"BUILD_MARKER": "yes"}
    )

    assert result.success
    assert on_log.lines[0] == ("info", "yes")
    assert os.path.realpath(on_log.lines[1][1]) == os.path.realpath(str(tmp_path))


@pytest.mark.asyncio
async def test_missing_executable(on_log):
    result = await run_command("definitely-not-a-real-binary-xyz", [], on_log=on_log)

    assert result.success is False
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert on_log.lines[0][0] == "error"


@pytest.mark.asyncio
async def test_capture_command_with_input():
    output = await capture_command(
        sys.executable, ["-c", "import sys; print(sys.stdin.read().upper())"], input_data="manifest"
    )

    assert output.success
    assert output.stdout.strip() == "MANIFEST"


@pytest.mark.asyncio
async def test_capture_command_timeout():
    output = await capture_command(sys.executable, ["-c", "import time; time.sleep(30)"], timeout=0.5)

    assert output.return_code == TIMEOUT_EXIT_CODE
    assert output.success is False


CHILD_SLEEPER = (
    "import subprocess, sys\n"
    "subprocess.run([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print('done')"
)


@pytest.mark.asyncio
async def test_timeout_kills_grandchildren_holding_pipes(on_log):
    started = time.monotonic()

    result = await run_command(sys.executable, ["-c", CHILD_SLEEPER], on_log=on_log, timeout=1)

    assert time.monotonic() - started < 10
    assert result.success is False
    assert result.timed_out is True
    assert ("info", "done") not in on_log.lines


@pytest.mark.asyncio
async def test_background_child_does_not_outlive_command(on_log):
    script = (
        "import subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print('spawned')"
    )
    started = time.monotonic()

    result = await run_command(sys.executable, ["-c", script], on_log=on_log, timeout=20)

    assert time.monotonic() - started < 10
    assert result.success is True
    assert on_log.lines == [("info", "spawned")]


@pytest.mark.asyncio
async def test_timeout_leaves_no_unretrieved_futures(on_log):
    loop = asyncio.get_running_loop()
    errors = []
    loop.set_exception_handler(lambda _loop, context: errors.append(context["message"]))

    await run_command(sys.executable, ["-c", "import time; time.sleep(30)"], on_log=on_log, timeout=0.5)
    gc.collect()
    await asyncio.sleep(0)

    loop.set_exception_handler(None)
    assert errors == []


@pytest.mark.asyncio
async def test_sink_failure_stops_command():
    async def failing_log(level, message):
        raise RuntimeError("sink down")

    started = time.monotonic()

    with pytest.raises(RuntimeError, match="sink down"):
        await run_command(
            sys.executable,
            ["-c", "import time; print('first', flush=True); time.sleep(30)"],
            on_log=failing_log,
            timeout=20,
        )

    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_capture_command_timeout_kills_grandchildren():
    started = time.monotonic()

    output = await capture_command(sys.executable, ["-c", CHILD_SLEEPER], timeout=1)

    assert time.monotonic() - started < 10
    assert output.return_code == TIMEOUT_EXIT_CODE
