from __future__ import annotations

import logging
import os
import pathlib
from typing import List, Optional
from uuid import uuid4


class TempArtifacts:
    """Temporary files owned by a single job run.

    Paths are unique per run and ``cleanup`` may be called any number of times.
    """

    def __init__(self, base_dir: str, prefix: str, logger: Optional[logging.Logger] = None) -> None:
        self.base_dir = base_dir
        self.prefix = prefix
        self.token = uuid4().hex[:12]
        self.log = logger or logging.getLogger(__name__)
        self._paths: List[str] = []

    def __enter__(self) -> "TempArtifacts":
        os.makedirs(self.base_dir, exist_ok=True)
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def path(self, name: str) -> str:
        path = os.path.join(self.base_dir, f"{self.prefix}_{self.token}_{name}")
        self.track(path)
        return path

    def track(self, path: str) -> str:
        if path not in self._paths:
            self._paths.append(path)
        return path

    def cleanup(self) -> None:
        for path in self._paths:
            remove_quietly(path, self.log)


def remove_quietly(path: str | None, log: Optional[logging.Logger] = None) -> None:
    if not path:
        return
    try:
        pathlib.Path(path).unlink(missing_ok=True)
    except OSError as exc:
        (log or logging.getLogger(__name__)).warning(
            "temp file cleanup failed", extra={"path": path}, exc_info=exc
        )
