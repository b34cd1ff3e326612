"""The working directory of a release that may have to be resumed."""

from __future__ import annotations

import contextlib
import os
import shutil
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

from release import PreconditionError


class ResumeDirectory:
    """Owns the existence of a release working directory, not its contents."""

    def __init__(self, path: Path, *, resumed: bool) -> None:
        self.path = path
        self.resumed = resumed

    @classmethod
    def acquire(cls, path: str | Path | None = None) -> ResumeDirectory:
        if path is None:
            return cls(Path(tempfile.mkdtemp(prefix="release-")), resumed=False)

        resume_path = Path(path).resolve()
        if not resume_path.is_dir():
            raise PreconditionError(f"Resume directory {resume_path} does not exist")
        if not os.access(resume_path, os.R_OK | os.W_OK | os.X_OK):
            raise PreconditionError(f"Resume directory {resume_path} is not usable")
        return cls(resume_path, resumed=True)

    def release(self, normal_completion: bool) -> None:
        if normal_completion:
            shutil.rmtree(self.path)
            return
        print(f"The release state has been kept in {self.path}", file=sys.stderr)
        print(
            f"Fix the problem and run the same command with --resume {self.path}",
            file=sys.stderr,
        )


@contextlib.contextmanager
def resume_directory(path: str | Path | None = None) -> Iterator[ResumeDirectory]:
    workdir = ResumeDirectory.acquire(path)
    try:
        yield workdir
    except BaseException:
        workdir.release(normal_completion=False)
        raise
    workdir.release(normal_completion=True)
