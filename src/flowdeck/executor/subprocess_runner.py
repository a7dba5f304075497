"""asyncio subprocess runner for external CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from typing import Any

from flowdeck.executor.base import (
    DEFAULT_TIMEOUT_MS,
    CommandError,
    CommandOptions,
    CommandResult,
    OutputCallback,
)

logger = logging.getLogger(__name__)

_STREAM_LIMIT_BYTES = 1024 * 1024
_JSON_BLOCK_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


class SubprocessCommandRunner:
    """Run ``<prefix...> <command> <args...>`` as a child process.

    Output lines are streamed to ``options.on_output`` as they arrive. When the
    timeout elapses the process gets SIGTERM, then SIGKILL after
    ``kill_grace_seconds``, and the result is reported with ``timed_out=True``
    and ``exit_code=-1``.
    """

    def __init__(
        self,
        *,
        command_prefix: tuple[str, ...] = (),
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.command_prefix = command_prefix
        self.default_timeout_ms = default_timeout_ms
        self.kill_grace_seconds = kill_grace_seconds

    async def execute(
        self,
        command: str,
        args: tuple[str, ...] | list[str] = (),
        options: CommandOptions | None = None,
    ) -> CommandResult:
        options = options or CommandOptions()
        timeout_ms = options.timeout_ms or self.default_timeout_ms
        argv = [*self.command_prefix, command, *args]
        env = os.environ.copy()
        env.update(options.env or {})

        start_monotonic = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(options.cwd) if options.cwd is not None else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as error:
            raise CommandError(f"Command not found: {argv[0]}") from error
        except OSError as error:
            raise CommandError(f"Failed to spawn command process: {error}") from error

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        timed_out = False
        try:
            await asyncio.wait_for(
                _communicate(process, stdout_lines, stderr_lines, options.on_output),
                timeout=timeout_ms / 1000.0,
            )
        except TimeoutError:
            timed_out = True
            logger.warning("Command %s timed out after %dms", argv[0], timeout_ms)
            await _terminate_process(process, grace_seconds=self.kill_grace_seconds)

        duration_ms = int((time.monotonic() - start_monotonic) * 1000)
        exit_code = -1 if timed_out else (process.returncode or 0)
        return CommandResult(
            stdout="\n".join(stdout_lines).strip(),
            stderr="\n".join(stderr_lines).strip(),
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )

    async def execute_json(
        self,
        command: str,
        args: tuple[str, ...] | list[str] = (),
        options: CommandOptions | None = None,
    ) -> Any:
        """Run a command with ``--format json`` and parse the JSON it prints."""

        run_args = list(args)
        if "--format" not in run_args:
            run_args.extend(["--format", "json"])

        result = await self.execute(command, run_args, options)
        if result.timed_out or result.exit_code != 0:
            raise CommandError.from_result(command, result)

        match = _JSON_BLOCK_RE.search(result.stdout)
        payload = match.group(1) if match else result.stdout
        try:
            return json.loads(payload)
        except json.JSONDecodeError as error:
            raise CommandError(
                f"Failed to parse JSON output: {result.stdout[:200]}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            ) from error

    async def is_available(self) -> bool:
        try:
            result = await self.execute("--version", (), CommandOptions(timeout_ms=10_000))
        except CommandError:
            return False
        return result.exit_code == 0

    async def get_version(self) -> str:
        result = await self.execute("--version", (), CommandOptions(timeout_ms=10_000))
        if result.exit_code != 0:
            raise CommandError(
                "Failed to get CLI version",
                exit_code=result.exit_code,
                stderr=result.stderr,
                timed_out=result.timed_out,
            )
        return result.stdout


async def _communicate(
    process: asyncio.subprocess.Process,
    stdout_lines: list[str],
    stderr_lines: list[str],
    on_output: OutputCallback | None,
) -> None:
    await asyncio.gather(
        _pump_stream(process.stdout, stdout_lines, is_stderr=False, on_output=on_output),
        _pump_stream(process.stderr, stderr_lines, is_stderr=True, on_output=on_output),
    )
    await process.wait()


async def _pump_stream(
    stream: asyncio.StreamReader | None,
    sink: list[str],
    *,
    is_stderr: bool,
    on_output: OutputCallback | None,
) -> None:
    if stream is None:
        return
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        sink.append(line)
        if on_output is not None and line:
            try:
                on_output(line, is_stderr)
            except Exception:
                logger.exception("Output callback failed")


async def _terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
