from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from storyreel.errors import ProcessError


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int


class Runner(Protocol):
    def run(self, tool: str, args: Sequence[str]) -> ProcessResult: ...


class ProcessRunner:
    """Runs external command line tools and captures their output.

    A non-zero exit, a missing binary or a timeout all surface as ProcessError.
    """

    def __init__(self, timeout: float | None = None, logger: Optional[logging.Logger] = None) -> None:
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def run(self, tool: str, args: Sequence[str]) -> ProcessResult:
        cmd = [tool, *[str(arg) for arg in args]]
        self.log.debug("running external tool", extra={"cmd": cmd})
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProcessError(tool, 127, f"{tool} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise ProcessError(tool, -1, f"timed out after {self.timeout}s") from exc
        result = ProcessResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            returncode=completed.returncode,
        )
        if result.returncode != 0:
            self.log.warning(
                "external tool failed",
                extra={"tool": tool, "returncode": result.returncode, "stderr": result.stderr[-2000:]},
            )
            raise ProcessError(tool, result.returncode, result.stderr)
        return result
