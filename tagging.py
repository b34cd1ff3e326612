"""Publish release tags, first to GitHub and then to the local clone."""

from __future__ import annotations

import subprocess
from pathlib import Path

from githubapi import REQUEST_ERRORS, GitHubAPI
from release import ReleaseVersion, TagPublishFailed, VersionAlreadyExists


def local_tag_commit(git_repo: Path, version: ReleaseVersion) -> str | None:
    proc = subprocess.run(
        ["git", "rev-parse", "--verify", "--quiet", f"{version.refname}^{{commit}}"],
        cwd=git_repo,
        stdout=subprocess.PIPE,
    )
    if proc.returncode != 0:
        return None
    return proc.stdout.decode().strip()


def create_local_tag(git_repo: Path, version: ReleaseVersion, commit: str) -> None:
    existing = local_tag_commit(git_repo, version)
    if existing == commit:
        return
    if existing is not None:
        raise VersionAlreadyExists(
            f"local tag {version} points to {existing}, not {commit}"
        )
    try:
        subprocess.check_call(["git", "tag", str(version), commit], cwd=git_repo)
    except subprocess.CalledProcessError as e:
        raise TagPublishFailed(f"Could not create local tag {version}: {e}") from e


async def publish_tag(
    api: GitHubAPI, git_repo: Path, version: ReleaseVersion, commit: str
) -> bool:
    """Tag `commit` as `version` on GitHub and in `git_repo`.

    Returns False when the tag was already published for the same commit.
    Nothing is tagged locally unless the remote tag exists.
    """
    try:
        existing = await api.tag_commit(version)
    except REQUEST_ERRORS as e:
        raise TagPublishFailed(f"Could not look up tag {version}: {e}") from e

    if existing is not None and existing != commit:
        raise VersionAlreadyExists(
            f"{version} is already tagged at {existing}, refusing to tag {commit}"
        )

    if existing is None:
        try:
            await api.create_tag(version, commit)
        except REQUEST_ERRORS as e:
            raise TagPublishFailed(f"Could not create tag {version}: {e}") from e
        print(f"Created tag {version} at {commit} in {api.repo}")
    else:
        print(f"Tag {version} already points to {commit} in {api.repo}")

    create_local_tag(git_repo, version, commit)
    return existing is None
