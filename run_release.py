#!/usr/bin/env python3

"""An automatic engine for nightly releases

Resolves the commit and version to release, tags the commit and hands the
artifact work over to flynn-release. A release that fails half way keeps its
working directory, and running the same command with --resume DIR picks it
up where it stopped.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import dbm
import functools
import os
import re
import shelve
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, TypeVar, cast

import release as release_mod
import tagging
import tuf_repo
from githubapi import REQUEST_ERRORS, GitHubAPI, GitHubAPIError, github_session
from release import (
    Channel,
    CommitResolutionFailed,
    ConflictError,
    DelegateError,
    InvalidVersionFormat,
    PreconditionError,
    ReleaseException,
    ReleaseShelf,
    ReleaseVersion,
    ResolutionError,
    Task,
    UsageError,
    VersionAlreadyExists,
)
from workdir import resume_directory

COMMIT_REGEXP = re.compile(r"[0-9a-f]{40}$")
DEFAULT_BRANCH = "master"
DEFAULT_BUCKET = "flynn"
DEFAULT_DOMAIN = "dl.flynn.io"
DEFAULT_TUF_DIR = "/etc/flynn/tuf"
GITHUB_REPO = "flynn/flynn"
RELEASE_BINARY = "flynn-release"
STATE_FILE = "release-state"
PINNED_COMMIT_ENV = "RELEASE_PINNED_COMMIT"
SOURCE_REPO_ENV = "RELEASE_SOURCE_REPO"
REQUIRED_CREDENTIALS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "GITHUB_TOKEN")

T = TypeVar("T")


@dataclass(frozen=True)
class ReleaseConfig:
    commit: str | None
    branch: str
    version: ReleaseVersion | None
    bucket: str
    domain: str
    tuf_dir: Path
    resume_dir: Path | None
    channel: Channel
    github_token: str
    github_repo: str = GITHUB_REPO
    git_repo: Path = Path(".")
    release_binary: str = RELEASE_BINARY


class ReleaseDriver:
    def __init__(
        self,
        tasks: list[Task],
        *,
        config: ReleaseConfig,
        resume_dir: Path,
    ) -> None:
        self.tasks = tasks
        self.config = config
        dbfile = resume_dir / STATE_FILE
        self.db: ReleaseShelf = cast(ReleaseShelf, shelve.open(str(dbfile), "c"))
        try:
            self._check_resumed_state()
        except ReleaseException:
            self.db.close()
            raise

        self.current_task: Task | None = None
        self.completed_task_descriptions = self.db.get("completed_tasks", [])
        self.remaining_tasks = iter(tasks[len(self.completed_task_descriptions) :])

        print("Release data: ")
        print(f"- Commit: {config.commit or self.db.get('commit', 'unresolved')}")
        print(f"- Branch: {config.branch}")
        print(f"- Version: {config.version or self.db.get('version') or 'next'}")
        print(f"- Channel: {config.channel}")
        print(f"- Bucket: {config.bucket}")
        print(f"- TUF repository: {config.tuf_dir}")
        print(f"- Resume directory: {resume_dir}")
        print(f"- GitHub repository: {config.github_repo}")
        print()

    def _check_resumed_state(self) -> None:
        commit = self.db.get("commit")
        if self.config.commit is not None and commit not in (None, self.config.commit):
            raise ConflictError(
                f"The resume directory belongs to commit {commit}, "
                f"not {self.config.commit}"
            )
        version = self.db.get("version")
        if self.config.version is not None and version not in (
            None,
            self.config.version,
        ):
            raise ConflictError(
                f"The resume directory belongs to version {version}, "
                f"not {self.config.version}"
            )

    def checkpoint(self) -> None:
        self.db["completed_tasks"] = self.completed_task_descriptions

    def close(self) -> None:
        self.db.close()

    def run(self) -> None:
        for description in self.completed_task_descriptions:
            print(f"✅  {description}")

        self.current_task = next(self.remaining_tasks, None)
        while self.current_task is not None:
            self.checkpoint()
            try:
                self.current_task(self.db, self.config)
            except ReleaseException:
                print(f"\r💥  {self.current_task.description}")
                raise
            except Exception as e:
                print(f"\r💥  {self.current_task.description}")
                raise ReleaseException(
                    f"{self.current_task.description} failed: {e}"
                ) from e
            print(f"\r✅  {self.current_task.description}")
            self.completed_task_descriptions.append(self.current_task.description)
            self.current_task = next(self.remaining_tasks, None)
        self.checkpoint()

        version = self.db.get("version")
        if version is not None:
            print()
            print(f"Congratulations, {version} is released 🎉🎉🎉")


def check_credentials(environ: Mapping[str, str]) -> None:
    missing = [name for name in REQUIRED_CREDENTIALS if not environ.get(name)]
    if missing:
        raise PreconditionError(
            f"Missing credentials, please set {', '.join(missing)}"
        )


def run_github(
    config: ReleaseConfig, request: Callable[[GitHubAPI], Awaitable[T]]
) -> T:
    """Run `request(api)` against a fresh GitHub session."""

    async def _run() -> T:
        async with github_session(config.github_token) as session:
            return await request(GitHubAPI(session, config.github_repo))

    return asyncio.run(_run())


def resolve_commit(config: ReleaseConfig, checkpoint_commit: str | None) -> str:
    if config.commit is not None:
        return config.commit
    if checkpoint_commit is not None:
        print(f"Resuming the release of {checkpoint_commit}")
        return checkpoint_commit

    try:
        commit = run_github(config, lambda api: api.branch_head(config.branch))
    except REQUEST_ERRORS as e:
        if isinstance(e, GitHubAPIError) and e.status == 404:
            raise CommitResolutionFailed(
                f"Branch {config.branch} does not exist in {config.github_repo}"
            ) from e
        raise CommitResolutionFailed(
            f"Could not resolve the head of {config.branch}: {e}"
        ) from e
    print(f"Head of {config.branch} is {commit}")
    return commit


def read_checkpoint_commit(resume_dir: Path) -> str | None:
    if not resume_dir.is_dir():
        raise PreconditionError(f"Resume directory {resume_dir} does not exist")
    dbfile = str(resume_dir / STATE_FILE)
    if dbm.whichdb(dbfile) is None:
        return None
    try:
        with shelve.open(dbfile, "r") as db:
            return cast(ReleaseShelf, db).get("commit")
    except dbm.error as e:
        raise PreconditionError(
            f"Cannot read the release state in {resume_dir}: {e}"
        ) from e


def _git_output(*args: str, cwd: Path) -> str | None:
    try:
        out = subprocess.check_output(
            ["git", *args], cwd=cwd, stderr=subprocess.DEVNULL
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return out.decode().strip()


def source_root() -> Path | None:
    """The root of the git checkout this script is running from."""
    here = Path(__file__).resolve().parent
    top = _git_output("rev-parse", "--show-toplevel", cwd=here)
    return Path(top) if top else None


def source_commit() -> str | None:
    return _git_output("rev-parse", "HEAD", cwd=Path(__file__).resolve().parent)


@contextlib.contextmanager
def checkout(repo_url: str, commit: str) -> Iterator[Path]:
    with tempfile.TemporaryDirectory(prefix="release-src-") as tmp:
        subprocess.check_call(["git", "clone", "--quiet", repo_url, tmp])
        subprocess.check_call(["git", "checkout", "--quiet", commit], cwd=tmp)
        yield Path(tmp)


def pin_release_logic(
    config: ReleaseConfig,
    commit: str,
    argv: Sequence[str],
    environ: Mapping[str, str] = os.environ,
) -> int | None:
    """Re-run this script from a checkout of `commit` if we are not at it.

    Returns the exit status of the pinned run, or None when the running code
    already is the code being released.
    """
    if environ.get(PINNED_COMMIT_ENV) == commit:
        return None
    root = source_root()
    running = source_commit()
    if root is None or running is None:
        print(
            "warning: not running from a git checkout, release logic is not pinned",
            file=sys.stderr,
        )
        return None
    if running == commit:
        return None

    script = Path(__file__).resolve().relative_to(root)
    print(f"This checkout is at {running}, running the release logic of {commit}")
    try:
        with checkout(f"https://github.com/{config.github_repo}.git", commit) as src:
            pinned_script = src / script
            if not pinned_script.exists():
                raise PreconditionError(f"{script} does not exist at {commit}")
            pinned_args = [*argv, "--commit", commit]
            if config.channel == "nightly":
                pinned_args.append("--nightly")
            env = {
                **environ,
                PINNED_COMMIT_ENV: commit,
                SOURCE_REPO_ENV: str(config.git_repo),
            }
            return subprocess.call(
                [sys.executable, str(pinned_script), *pinned_args], env=env
            )
    except subprocess.CalledProcessError as e:
        raise ResolutionError(f"Could not check out {commit}: {e}") from e


def check_tool(db: ReleaseShelf, config: ReleaseConfig, tool: str) -> None:
    if shutil.which(tool) is None:
        raise PreconditionError(f"{tool} is not available")


check_git = functools.partial(check_tool, tool="git")


def check_release_binary(db: ReleaseShelf, config: ReleaseConfig) -> None:
    check_tool(db, config, config.release_binary)


def record_commit(db: ReleaseShelf, config: ReleaseConfig) -> None:
    assert config.commit is not None, "the commit is resolved before the pipeline"
    db["commit"] = config.commit


def check_tuf_repository(db: ReleaseShelf, config: ReleaseConfig) -> None:
    tuf_repo.check_repository(config.tuf_dir)


def check_version_not_released(db: ReleaseShelf, config: ReleaseConfig) -> None:
    if config.version is None:
        return
    if tuf_repo.release_exists(config.tuf_dir, config.version):
        raise VersionAlreadyExists(f"{config.version} has already been released")


def resolve_version(db: ReleaseShelf, config: ReleaseConfig) -> None:
    if "version" in db:
        return
    if config.version is not None:
        db["version"] = config.version
        return

    try:
        names = run_github(config, lambda api: api.version_tags())
    except REQUEST_ERRORS as e:
        raise ResolutionError(f"Could not list the existing releases: {e}") from e
    latest = release_mod.latest_version(names)
    version = release_mod.next_version(latest, release_mod.today())
    if tuf_repo.release_exists(config.tuf_dir, version):
        raise VersionAlreadyExists(
            f"{version} is already in the TUF repository but has no tag"
        )
    print(f"Latest release is {latest}, releasing {version}")
    db["version"] = version


def publish_release_tag(db: ReleaseShelf, config: ReleaseConfig) -> None:
    version = db["version"]
    commit = db["commit"]
    run_github(
        config,
        lambda api: tagging.publish_tag(api, config.git_repo, version, commit),
    )


def component_release_command(
    config: ReleaseConfig, commit: str, version: ReleaseVersion
) -> list[str]:
    assert config.resume_dir is not None
    command = [
        config.release_binary,
        "release",
        "--bucket",
        config.bucket,
        "--tuf-dir",
        str(config.tuf_dir),
        "--resume-dir",
        str(config.resume_dir),
        "--keep-dir",
    ]
    if config.channel == "nightly":
        command += ["--channel", config.channel]
    return command + [commit, str(version)]


def release_components(db: ReleaseShelf, config: ReleaseConfig) -> None:
    command = component_release_command(config, db["commit"], db["version"])
    try:
        subprocess.check_call(command)
    except FileNotFoundError:
        raise DelegateError(f"{config.release_binary} is not available") from None
    except subprocess.CalledProcessError as e:
        raise DelegateError(
            f"{config.release_binary} failed with exit status {e.returncode}"
        ) from e


def release_tasks() -> list[Task]:
    return [
        Task(record_commit, "Resolve the commit to release"),
        Task(check_git, "Checking Git is available"),
        Task(check_release_binary, "Checking the release binary is available"),
        Task(check_tuf_repository, "Checking the TUF repository"),
        Task(check_version_not_released, "Checking the version is not released yet"),
        Task(resolve_version, "Resolve the release version"),
        Task(publish_release_tag, "Publish the release tag"),
        Task(release_components, "Release the components"),
    ]


class ReleaseArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(f"{self.format_usage()}{self.prog}: error: {message}")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = ReleaseArgumentParser(description="Make a nightly release.")

    def _commit_type(commit: str) -> str:
        if not COMMIT_REGEXP.match(commit):
            raise argparse.ArgumentTypeError(
                "Invalid commit, it must be a full 40 character SHA"
            )
        return commit

    def _version_type(version: str) -> ReleaseVersion:
        try:
            return ReleaseVersion(version)
        except InvalidVersionFormat as e:
            raise argparse.ArgumentTypeError(str(e)) from None

    parser.add_argument(
        "--commit",
        help="Commit to release, defaults to the head of --branch",
        type=_commit_type,
    )
    parser.add_argument(
        "--branch",
        default=DEFAULT_BRANCH,
        help="Branch whose head is released when --commit is not given",
    )
    parser.add_argument(
        "--version",
        help="Release version, defaults to the next v<YYYYMMDD>.<N> version",
        type=_version_type,
    )
    parser.add_argument(
        "--bucket",
        default=DEFAULT_BUCKET,
        help="The S3 bucket to upload the release artifacts to",
    )
    parser.add_argument(
        "--domain",
        default=DEFAULT_DOMAIN,
        help="The domain the release is downloaded from",
    )
    parser.add_argument(
        "--tuf-dir",
        dest="tuf_dir",
        default=Path(DEFAULT_TUF_DIR),
        help="Path to the local TUF repository",
        type=Path,
    )
    parser.add_argument(
        "--resume",
        dest="resume_dir",
        help="Resume a failed release from its working directory",
        type=Path,
    )
    parser.add_argument(
        "--nightly",
        action="store_true",
        help="Release into the nightly channel",
    )
    return parser.parse_args(argv)


def release_channel(args: argparse.Namespace) -> Channel:
    if args.nightly or (args.commit is None and args.branch == DEFAULT_BRANCH):
        return "nightly"
    return "stable"


def local_repository(environ: Mapping[str, str]) -> Path:
    """The clone that receives the local release tag.

    A pinned run executes from a temporary checkout, so it tags the
    repository of the run that started it.
    """
    if environ.get(PINNED_COMMIT_ENV) and environ.get(SOURCE_REPO_ENV):
        return Path(environ[SOURCE_REPO_ENV])
    return source_root() or Path.cwd()


def build_config(
    args: argparse.Namespace, environ: Mapping[str, str] = os.environ
) -> ReleaseConfig:
    check_credentials(environ)
    return ReleaseConfig(
        commit=args.commit,
        branch=args.branch,
        version=args.version,
        bucket=args.bucket,
        domain=args.domain,
        tuf_dir=args.tuf_dir,
        resume_dir=args.resume_dir,
        channel=release_channel(args),
        github_token=environ["GITHUB_TOKEN"],
        github_repo=environ.get("RELEASE_GITHUB_REPO", GITHUB_REPO),
        git_repo=local_repository(environ),
        release_binary=environ.get("FLYNN_RELEASE", RELEASE_BINARY),
    )


def run_pipeline(config: ReleaseConfig, tasks: list[Task]) -> ReleaseVersion | None:
    with resume_directory(config.resume_dir) as workdir:
        config = dataclasses.replace(config, resume_dir=workdir.path)
        driver = ReleaseDriver(tasks, config=config, resume_dir=workdir.path)
        try:
            driver.run()
            return driver.db.get("version")
        finally:
            driver.close()


def main(argv: Sequence[str] | None = None) -> None:
    try:
        args = parse_args(argv)
        config = build_config(args)
        checkpoint_commit = None
        if config.resume_dir is not None:
            checkpoint_commit = read_checkpoint_commit(config.resume_dir)
        commit = resolve_commit(config, checkpoint_commit)

        returncode = pin_release_logic(
            config, commit, sys.argv[1:] if argv is None else argv
        )
        if returncode is not None:
            sys.exit(returncode)

        config = dataclasses.replace(config, commit=commit)
        version = run_pipeline(config, release_tasks())
    except ReleaseException as e:
        release_mod.error(str(e))

    print(f"{version} is available from https://{config.domain}")


if __name__ == "__main__":
    main()
