from __future__ import annotations

import asyncio
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from conductor.context import RunContext
from conductor.errors import TaskExecutionError
from conductor.executors.base import TaskExecutor
from conductor.findings import Finding, parse_findings
from conductor.logger import get_logger

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 1000

logger = get_logger(__name__)


def split_command(command: str) -> tuple[str | list[str], bool]:
    """Return the argv (or raw string) for ``command`` and whether it needs a shell."""
    command_text = command.strip()
    if SHELL_REQUIRED_PATTERN.search(command_text):
        return command_text, True
    try:
        return shlex.split(command_text), False
    except ValueError:
        return command_text, True


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    used_shell: bool = False
    findings: list[Finding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor(TaskExecutor):
    """Runs a quality-check style shell command and reports its findings.

    Payload: ``{"command": str, "cwd": str | None, "allow_failure": bool,
    "finding_category": str}``. Findings are read from JSON lines on stdout.
    """

    name = "command"

    def __init__(self, *, cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        self.cwd = cwd
        self.env = env

    async def execute(self, payload: Any, context: RunContext) -> CommandResult:
        if isinstance(payload, str):
            payload = {"command": payload}
        if not isinstance(payload, Mapping):
            raise TaskExecutionError(
                "Command payload must be a string or a mapping.",
                executor=self.name,
                retriable=False,
            )
        command = str(payload.get("command", "")).strip()
        if not command:
            raise TaskExecutionError("Command is empty.", executor=self.name, retriable=False)
        context.raise_if_cancelled()

        invocation, used_shell = split_command(command)
        cwd = payload.get("cwd") or self.cwd
        logger.debug("Running command %r (shell=%s, cwd=%s)", command, used_shell, cwd)
        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    str(invocation),
                    cwd=cwd,
                    env=self.env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *invocation,
                    cwd=cwd,
                    env=self.env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError as exc:
            raise TaskExecutionError(
                f"Command not found: {command}",
                executor=self.name,
                retriable=False,
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        exit_code = process.returncode if process.returncode is not None else -1
        result = CommandResult(
            command=command,
            exit_code=exit_code,
            stdout_tail=stdout[-OUTPUT_TAIL_CHARS:],
            stderr_tail=stderr[-OUTPUT_TAIL_CHARS:],
            used_shell=used_shell,
            findings=parse_findings(
                stdout,
                default_category=str(payload.get("finding_category", "quality")),
            ),
        )
        if exit_code != 0 and not payload.get("allow_failure", False):
            raise TaskExecutionError(
                f"Command failed with exit code {exit_code}: {result.stderr_tail[-400:]}",
                executor=self.name,
                exit_code=exit_code,
                retriable=False,
            )
        return result
