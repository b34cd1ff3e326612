"""Read-only queries against a local TUF repository."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from release import PreconditionError, ReleaseVersion

TARGETS_METADATA = Path("repository") / "targets.json"


def load_targets(tuf_dir: Path) -> dict[str, Any]:
    targets_file = tuf_dir / TARGETS_METADATA
    try:
        metadata = json.loads(targets_file.read_text())
    except FileNotFoundError:
        raise PreconditionError(
            f"No TUF targets metadata found at {targets_file}"
        ) from None
    except json.JSONDecodeError as e:
        raise PreconditionError(f"Invalid TUF targets metadata in {targets_file}: {e}") from e

    try:
        targets = metadata["signed"]["targets"]
    except (KeyError, TypeError):
        raise PreconditionError(
            f"TUF targets metadata in {targets_file} has no signed targets"
        ) from None
    if not isinstance(targets, dict):
        raise PreconditionError(
            f"TUF targets metadata in {targets_file} has no signed targets"
        )
    return targets


def check_repository(tuf_dir: Path) -> None:
    load_targets(tuf_dir)


def release_exists(tuf_dir: Path, version: ReleaseVersion) -> bool:
    # Release targets are stored under /<version>/, e.g. /v20240101.0/flynn-host.gz
    prefix = f"/{version}/"
    return any(name.startswith(prefix) for name in load_targets(tuf_dir))
