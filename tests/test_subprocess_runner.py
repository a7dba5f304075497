from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import allure
import pytest

from flowdeck.executor import CommandError, CommandOptions, SubprocessCommandRunner

pytestmark = [
    allure.epic("Job Scheduling"),
    allure.feature("Command Execution"),
]


def _python(code: str, options: CommandOptions | None = None, **runner_kwargs):
    runner = SubprocessCommandRunner(**runner_kwargs)
    return asyncio.run(runner.execute(sys.executable, ("-c", code), options))


def test_streams_output_lines_and_captures_stdout() -> None:
    lines: list[tuple[str, bool]] = []
    options = CommandOptions(on_output=lambda line, is_stderr: lines.append((line, is_stderr)))

    result = _python("print('alpha'); print(); print('beta')", options)

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.stdout == "alpha\n\nbeta"
    assert lines == [("alpha", False), ("beta", False)]


def test_non_zero_exit_and_stderr_are_reported() -> None:
    result = _python("import sys; sys.stderr.write('bad things\\n'); sys.exit(3)")

    assert result.exit_code == 3
    assert result.stderr == "bad things"


def test_timeout_kills_process() -> None:
    result = _python(
        "import time; time.sleep(10)",
        CommandOptions(timeout_ms=200),
        kill_grace_seconds=1.0,
    )

    assert result.timed_out is True
    assert result.exit_code == -1
    assert result.duration_ms < 5_000


def test_environment_and_cwd_are_applied(tmp_path: Path) -> None:
    result = _python(
        "import os; print(os.environ['FLOWDECK_PROBE']); print(os.getcwd())",
        CommandOptions(env={"FLOWDECK_PROBE": "probe-value"}, cwd=tmp_path),
    )

    stdout_lines = result.stdout.splitlines()
    assert stdout_lines[0] == "probe-value"
    assert Path(stdout_lines[1]).resolve() == tmp_path.resolve()


def test_missing_binary_raises_command_error() -> None:
    runner = SubprocessCommandRunner()

    with pytest.raises(CommandError, match="Command not found"):
        asyncio.run(runner.execute("flowdeck-definitely-missing-binary"))


def test_command_prefix_is_prepended() -> None:
    runner = SubprocessCommandRunner(command_prefix=(sys.executable,))

    result = asyncio.run(runner.execute("-c", ("print('from prefix')",)))

    assert result.stdout == "from prefix"


def test_execute_json_extracts_payload() -> None:
    runner = SubprocessCommandRunner(command_prefix=(sys.executable, "-c"))
    code = "import sys, json; print('noise'); print(json.dumps({'args': sys.argv[1:]}))"

    payload = asyncio.run(runner.execute_json(code))

    assert payload == {"args": ["--format", "json"]}


def test_execute_json_raises_on_unparsable_output() -> None:
    runner = SubprocessCommandRunner(command_prefix=(sys.executable, "-c"))

    with pytest.raises(CommandError, match="Failed to parse JSON"):
        asyncio.run(runner.execute_json("print('{not json}')"))


def test_availability_and_version() -> None:
    runner = SubprocessCommandRunner(command_prefix=(sys.executable,))

    assert asyncio.run(runner.is_available()) is True
    assert asyncio.run(runner.get_version()).startswith("Python")
    missing = SubprocessCommandRunner(command_prefix=("flowdeck-definitely-missing-binary",))
    assert asyncio.run(missing.is_available()) is False
