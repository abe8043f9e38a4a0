from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from otrcut.errors import ToolInvocationError

PROGRESS_PATTERN = re.compile(r"(\d{1,3})%")

OutputCallback = Callable[[str], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolOutcome:
    """Exit status and captured error stream of one tool invocation."""

    returncode: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ToolRunner(Protocol):
    def invoke(self, command: list[str], on_output: OutputCallback | None = None) -> ToolOutcome:
        ...


class SubprocessToolRunner:
    """Runs external tools, streaming stdout lines and capturing stderr."""

    def invoke(self, command: list[str], on_output: OutputCallback | None = None) -> ToolOutcome:
        logger.debug("Running %s", _redact(command))
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            return ToolOutcome(
                returncode=127,
                stderr=f"{command[0]} executable was not found. Install it or configure its path.\n",
            )
        except OSError as exc:
            return ToolOutcome(returncode=126, stderr=f"{command[0]} could not be started: {exc}\n")

        stderr_lines: list[str] = []
        drain = threading.Thread(target=_drain, args=(process.stderr, stderr_lines), daemon=True)
        drain.start()

        assert process.stdout is not None
        for line in process.stdout:
            if on_output is not None:
                on_output(line.rstrip("\r\n"))

        returncode = process.wait()
        drain.join()
        return ToolOutcome(returncode=returncode, stderr="".join(stderr_lines))


def run_tool(
    runner: ToolRunner,
    command: list[str],
    *,
    tool_name: str,
    diagnostics_path: Path,
    on_output: OutputCallback | None = None,
) -> ToolOutcome:
    """Invoke a tool; on failure persist its error stream and raise ToolInvocationError."""

    outcome = runner.invoke(command, on_output)
    if outcome.ok:
        return outcome

    written = write_diagnostics(diagnostics_path, outcome.stderr)
    stderr = outcome.stderr.strip()
    details = f" {tool_name} stderr: {stderr.splitlines()[-1]}" if stderr else ""
    raise ToolInvocationError(
        f"{tool_name} exited with status {outcome.returncode}.{details}",
        returncode=outcome.returncode,
        diagnostics_path=written,
    )


def write_diagnostics(path: Path, text: str) -> Path | None:
    """Persist captured error output for operator inspection."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        logger.error("Cannot write diagnostics to %s: %s", path, exc)
        return None
    return path


def remove_diagnostics(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Stale diagnostics %s could not be removed: %s", path, exc)


def parse_progress(line: str) -> int | None:
    """Return the last percentage printed on a tool output line, if any."""

    matches = PROGRESS_PATTERN.findall(line)
    if not matches:
        return None
    return min(int(matches[-1]), 100)


def _drain(stream, sink: list[str]) -> None:
    for line in stream:
        sink.append(line)


def _redact(command: list[str]) -> list[str]:
    redacted: list[str] = []
    hide_next = False
    for part in command:
        redacted.append("***" if hide_next else part)
        hide_next = part in ("-p", "--password")
    return redacted
