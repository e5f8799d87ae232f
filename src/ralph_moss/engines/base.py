"""Base class for AI agent engine adapters."""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from ralph_moss.errors import looks_like_rate_limit
from ralph_moss.io_utils import open_text


@dataclass
class EngineResult:
    """Uniform result from any engine invocation."""

    text: str = ""
    raw: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    error: str = ""
    return_code: int = 0
    timed_out: bool = False


class EngineBase(ABC):
    """Abstract engine adapter.  Subclasses implement ``build_cmd`` and ``parse_output``.

    The agent is treated as a black box: request is (prompt, working dir),
    response is (exit status, captured stdout). Every live process is
    tracked so an operator interrupt can stop them all.
    """

    name: str = "base"
    prompt_via_stdin: bool = False

    def __init__(self) -> None:
        self._procs: set[subprocess.Popen[str]] = set()
        self._procs_lock = threading.Lock()

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the engine CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def run_sync(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        log_file: Path | None = None,
        timeout: float | None = None,
    ) -> EngineResult:
        """Execute the engine, wait for it (up to *timeout* seconds) and parse the result."""
        cmd = self.build_cmd(prompt)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if self.prompt_via_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                creationflags=self._creationflags(),
            )
        except (FileNotFoundError, PermissionError) as e:
            return EngineResult(error=f"{cmd[0]} could not be started: {e}", return_code=-1)

        with self._procs_lock:
            self._procs.add(proc)
        try:
            stdout, stderr = proc.communicate(
                input=prompt if self.prompt_via_stdin else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            self._terminate_process(proc)
            stdout, stderr = self._drain(proc)
            result = EngineResult(
                raw=stdout,
                error=f"timeout after {timeout}s",
                return_code=-1,
                timed_out=True,
            )
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self._write_log(log_file, stdout, stderr)
            return result
        finally:
            with self._procs_lock:
                self._procs.discard(proc)

        self._write_log(log_file, stdout, stderr)

        result = self.parse_output(stdout or "")
        result.raw = stdout or ""
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - start) * 1000)

        error = self._check_errors(stdout or "")
        if error and not result.error:
            result.error = error

        if proc.returncode != 0 and not result.error:
            stderr_text = (stderr or "").strip()
            result.error = stderr_text.splitlines()[0] if stderr_text else f"exit code {proc.returncode}"

        return result

    def terminate_all(self) -> int:
        """Kill every process this engine started that is still running."""
        with self._procs_lock:
            procs = list(self._procs)
        for proc in procs:
            self._terminate_process(proc)
        return len(procs)

    @staticmethod
    def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
        try:
            out, err = proc.communicate(timeout=2)
        except (subprocess.TimeoutExpired, OSError, ValueError):
            return "", ""
        return out or "", err or ""

    @staticmethod
    def _write_log(log_file: Path | None, stdout: str | None, stderr: str | None) -> None:
        if not log_file:
            return
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open_text(log_file, "a", errors="replace") as f:
            if stdout:
                f.write(stdout)
            if stderr:
                f.write(stderr)

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly, escalating to kill."""
        try:
            if proc.poll() is None:
                proc.terminate()
        except OSError:
            pass

        try:
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            pass

        try:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass

    @staticmethod
    def _creationflags() -> int:
        if sys.platform == "win32":
            return int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return 0

    @staticmethod
    def _check_errors(raw: str) -> str:
        """Detect structured error events in JSON-lines engine output."""
        if not raw:
            return ""

        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            err = obj.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message", "")).strip()
                code = str(err.get("type", "") or err.get("code", "")).strip()
                if looks_like_rate_limit(code):
                    return msg or "Rate limit exceeded"
                if msg:
                    return msg
            elif isinstance(err, str) and err.strip():
                if looks_like_rate_limit(err):
                    return "Rate limit exceeded"
                return err.strip()

            if str(obj.get("type", "")).lower() == "error":
                msg = obj.get("message") or obj.get("text") or ""
                return str(msg).strip() or "Unknown error"

        return ""
