from __future__ import annotations


class JobValidationError(ValueError):
    """Raised when a job payload or schedule is rejected before any external call."""


class StoryboardNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


class JobAlreadyFinishedError(ValueError):
    pass


class JobCancelledError(RuntimeError):
    """Raised inside a handler once its job has been cancelled."""


class LockLostError(RuntimeError):
    """Raised when another scheduler took over a job whose lock expired."""


class GenerationError(RuntimeError):
    """Raised when the generation provider fails or returns garbage."""


class ProcessError(RuntimeError):
    def __init__(self, tool: str, returncode: int, stderr: str = "") -> None:
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"{tool} exited with code {returncode}: {detail}")


class AudioExtractionError(RuntimeError):
    pass


class AudioWindowError(AudioExtractionError):
    """Raised when the requested start offset is past the end of the audio."""


class PipelineStepError(RuntimeError):
    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(f"{step} failed: {message}")
