from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..audit import AuditLog
from ..errors import ScriptExecutionError, ScriptSafetyViolation

LOGGER = logging.getLogger(__name__)

SAFE_COMMAND = re.compile(r"^[a-zA-Z0-9:\-_./=\s]+$")

DANGEROUS_COMMANDS = frozenset(
    {
        "rm",
        "rmdir",
        "del",
        "chmod",
        "chown",
        "chgrp",
        "sudo",
        "su",
        "curl",
        "wget",
        "nc",
        "netcat",
        "telnet",
        "ssh",
        "scp",
        "ftp",
        "kill",
        "killall",
        "pkill",
        "eval",
        "exec",
        "source",
        "mkfs",
        "dd",
        "shutdown",
        "reboot",
    }
)

SHELL_OPERATORS = ("&&", "||", ";", "|", ">", "<", "`", "$", "../", "..")
SCRIPT_FORBIDDEN_FRAGMENTS = ("`", "../", ":(){", "/dev/sd", "> /dev/")

_WORD = re.compile(r"[A-Za-z0-9_.\-]+")


@dataclass
class ScriptRunResult:
    returncode: int
    output: str
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ScriptValidator:
    """Allow-list plus deny-list check for shell fragments about to run.

    Single-line commands (lint/test) must either be configured exactly or
    contain only plain words with no shell operators. Multi-line step scripts
    are checked against the dangerous-command words only, since they are
    ordinary shell scripts.
    """

    def __init__(self, allowed_commands: Iterable[str] = (), audit: AuditLog | None = None) -> None:
        self.allowed_commands = frozenset(command.strip() for command in allowed_commands if command)
        self.audit = audit

    def validate_command(self, command: str) -> None:
        reason = self._command_problem(command)
        self._report(command, reason)

    def validate_script(self, script: str) -> None:
        reason = self._script_problem(script)
        self._report(script, reason)

    def is_command_safe(self, command: str) -> bool:
        return self._command_problem(command) is None

    def _command_problem(self, command: str) -> str | None:
        stripped = command.strip()
        if not stripped:
            return "empty command"
        if stripped in self.allowed_commands:
            return None
        for operator in SHELL_OPERATORS:
            if operator in stripped:
                return f"shell operator '{operator}'"
        if not SAFE_COMMAND.match(stripped):
            return "invalid characters"
        return _dangerous_word(stripped)

    def _script_problem(self, script: str) -> str | None:
        if not script.strip():
            return "empty script"
        if "\0" in script:
            return "NUL byte"
        for fragment in SCRIPT_FORBIDDEN_FRAGMENTS:
            if fragment in script:
                return f"forbidden fragment '{fragment}'"
        for line in script.splitlines():
            code = line.split("#", 1)[0]
            problem = _dangerous_word(code)
            if problem:
                return problem
        return None

    def _report(self, script: str, reason: str | None) -> None:
        if reason is None:
            if self.audit is not None:
                self.audit.record("script_validation_success", script=script)
            return
        if self.audit is not None:
            self.audit.record("script_validation_failed", script=script, reason=reason)
        LOGGER.error("Refusing unsafe script (%s)", reason)
        raise ScriptSafetyViolation(script, reason)


def _dangerous_word(text: str) -> str | None:
    for word in _WORD.findall(text):
        if word in DANGEROUS_COMMANDS:
            return f"dangerous keyword '{word}'"
    return None


def tail_lines(output: str, max_lines: int) -> str:
    lines = output.rstrip("\n").splitlines()
    if max_lines <= 0 or len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(lines[-max_lines:])


def run_process(
    command: list[str],
    cwd: str | Path,
    timeout_s: float,
    env: dict[str, str] | None = None,
) -> ScriptRunResult:
    """Run ``command`` without a shell, merging stderr into stdout.

    On timeout the whole process group is killed.
    """
    run_env = os.environ.copy()
    if env:
        run_env.update(env)
    try:
        proc = subprocess.Popen(
            command,
            cwd=cwd,
            env=run_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        return ScriptRunResult(returncode=127, output=f"Could not start {command[0]}: {exc}")
    try:
        output, _ = proc.communicate(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        output, _ = proc.communicate()
        output = (output or "") + f"\nTimed out after {timeout_s:g}s (process group killed)"
        return ScriptRunResult(returncode=124, output=output, timed_out=True)
    except BaseException:
        # Interrupted while waiting; do not leave the child running.
        proc.kill()
        proc.wait()
        raise
    return ScriptRunResult(returncode=proc.returncode, output=output or "")


def run_validation_script(
    script: str,
    cwd: str | Path,
    validator: ScriptValidator,
    timeout_s: float = 300.0,
    step_id: str = "",
) -> str:
    """Validate and run an embedded bash script; returns its combined output."""
    validator.validate_script(script)
    LOGGER.info("Running validation script for '%s'", step_id)
    fd, script_path = tempfile.mkstemp(prefix="step-", suffix=".sh")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(script.replace("\r\n", "\n"))
        result = run_process(["bash", script_path], cwd=cwd, timeout_s=timeout_s)
    finally:
        Path(script_path).unlink(missing_ok=True)
    if result.timed_out:
        raise ScriptExecutionError(
            f"Validation script for '{step_id}' timed out after {timeout_s:g}s",
            output=result.output,
            returncode=result.returncode,
        )
    if result.returncode != 0:
        raise ScriptExecutionError(
            f"Validation script for '{step_id}' exited with code {result.returncode}",
            output=result.output,
            returncode=result.returncode,
        )
    LOGGER.info("Validation script for '%s' finished successfully", step_id)
    return result.output
