#!/usr/bin/env python3

"""Core types for making nightly releases.

Release versions are date based: v<YYYYMMDD>.<sequence>, where the sequence
starts at 0 and counts additional releases made on the same day.
"""

from __future__ import annotations

import datetime
import functools
import re
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Literal,
    NoReturn,
    Protocol,
    Self,
    overload,
)

if TYPE_CHECKING:
    from run_release import ReleaseConfig

version_cre = re.compile(r"v(?P<date>\d{8})\.(?P<sequence>0|[1-9]\d*)$")

Channel = Literal["stable", "nightly"]


class ReleaseException(Exception):
    """An error happened in the release process"""


class UsageError(ReleaseException):
    """Invalid command line arguments"""


class PreconditionError(ReleaseException):
    """Something the release needs is missing or unusable"""


class ResolutionError(ReleaseException):
    """A commit or version could not be determined"""


class InvalidVersionFormat(ResolutionError):
    pass


class CommitResolutionFailed(ResolutionError):
    pass


class ConflictError(ReleaseException):
    """The release would overwrite something that already exists"""


class VersionAlreadyExists(ConflictError):
    pass


class PublishError(ReleaseException):
    """Publishing the release tag failed"""


class TagPublishFailed(PublishError):
    pass


class DelegateError(ReleaseException):
    """The component release process failed"""


class ReleaseShelf(Protocol):
    def close(self) -> None: ...

    @overload
    def get(
        self, key: Literal["completed_tasks"], default: list[str] | None = None
    ) -> list[str]: ...

    @overload
    def get(self, key: Literal["commit"], default: str | None = None) -> str: ...

    @overload
    def get(
        self, key: Literal["version"], default: ReleaseVersion | None = None
    ) -> ReleaseVersion: ...

    @overload
    def __getitem__(self, key: Literal["completed_tasks"]) -> list[str]: ...

    @overload
    def __getitem__(self, key: Literal["commit"]) -> str: ...

    @overload
    def __getitem__(self, key: Literal["version"]) -> ReleaseVersion: ...

    @overload
    def __setitem__(
        self, key: Literal["completed_tasks"], value: list[str]
    ) -> None: ...

    @overload
    def __setitem__(self, key: Literal["commit"], value: str) -> None: ...

    @overload
    def __setitem__(self, key: Literal["version"], value: ReleaseVersion) -> None: ...

    def __contains__(self, key: object) -> bool: ...


@dataclass
class Task:
    function: Callable[[ReleaseShelf, ReleaseConfig], None]
    description: str

    def __call__(self, db: ReleaseShelf, config: ReleaseConfig) -> Any:
        return getattr(self, "function")(db, config)


@functools.total_ordering
class ReleaseVersion:
    def __init__(self, text: str) -> None:
        result = version_cre.match(text)
        if result is None:
            raise InvalidVersionFormat(
                f"version {text!r} is not of the form v<YYYYMMDD>.<sequence>"
            )
        try:
            self.date = datetime.datetime.strptime(
                result.group("date"), "%Y%m%d"
            ).date()
        except ValueError:
            raise InvalidVersionFormat(
                f"version {text!r} does not contain a valid date"
            ) from None
        self.sequence = int(result.group("sequence"))
        self.text = text

    @classmethod
    def for_date(cls, date: datetime.date, sequence: int = 0) -> Self:
        return cls(f"v{date:%Y%m%d}.{sequence}")

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"ReleaseVersion({self.text!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReleaseVersion):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __lt__(self, other: ReleaseVersion) -> bool:
        return self.as_tuple() < other.as_tuple()

    def __hash__(self) -> int:
        return hash(self.as_tuple())

    def as_tuple(self) -> tuple[datetime.date, int]:
        return self.date, self.sequence

    @property
    def refname(self) -> str:
        return f"refs/tags/{self.text}"

    def next(self, today: datetime.date) -> Self:
        if self.date == today:
            return self.__class__.for_date(today, self.sequence + 1)
        return self.__class__.for_date(today)


def today() -> datetime.date:
    return datetime.datetime.now(datetime.timezone.utc).date()


def latest_version(names: Iterable[str]) -> ReleaseVersion | None:
    """The greatest version among existing tag names.

    Every name must be a release version; anything else means the tag
    namespace is not what we expect and we refuse to guess.
    """
    versions = [ReleaseVersion(name) for name in names]
    return max(versions, default=None)


def next_version(
    latest: ReleaseVersion | None, today: datetime.date
) -> ReleaseVersion:
    if latest is None:
        return ReleaseVersion.for_date(today)
    return latest.next(today)


def error(*msgs: str) -> NoReturn:
    print("**ERROR**", file=sys.stderr)
    for msg in msgs:
        print(msg, file=sys.stderr)
    sys.exit(1)
