import asyncio
from pathlib import Path
from subprocess import CalledProcessError, CompletedProcess
from unittest.mock import AsyncMock

import aiohttp
import pytest
from pytest_mock import MockerFixture

import githubapi
import tagging
from release import ReleaseVersion, TagPublishFailed, VersionAlreadyExists

COMMIT = "8f3c2a6d1b9e4f70a5c3d2e1f0b9a8c7d6e5f4a3"
OTHER_COMMIT = "1d2c3b4a5f6e7d8c9b0a1f2e3d4c5b6a7f8e9d0c"
VERSION = ReleaseVersion("v20240102.0")


def mock_api() -> AsyncMock:
    api = AsyncMock(githubapi.GitHubAPI)
    api.repo = "flynn/flynn"
    return api


def test_local_tag_commit(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    proc = CompletedProcess([], 0)
    proc.stdout = f"{COMMIT}\n".encode()
    mock_run = mocker.patch("tagging.subprocess.run", return_value=proc)

    # Act
    commit = tagging.local_tag_commit(tmp_path, VERSION)

    # Assert
    assert commit == COMMIT
    assert mock_run.call_args.args[0] == [
        "git",
        "rev-parse",
        "--verify",
        "--quiet",
        "refs/tags/v20240102.0^{commit}",
    ]


def test_local_tag_commit_missing(mocker: MockerFixture, tmp_path: Path) -> None:
    mocker.patch("tagging.subprocess.run", return_value=CompletedProcess([], 1))
    assert tagging.local_tag_commit(tmp_path, VERSION) is None


def test_create_local_tag(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    mocker.patch("tagging.local_tag_commit", return_value=None)
    mock_check_call = mocker.patch("tagging.subprocess.check_call")

    # Act
    tagging.create_local_tag(tmp_path, VERSION, COMMIT)

    # Assert
    mock_check_call.assert_called_once_with(
        ["git", "tag", "v20240102.0", COMMIT], cwd=tmp_path
    )


def test_create_local_tag_already_there(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    mocker.patch("tagging.local_tag_commit", return_value=COMMIT)
    mock_check_call = mocker.patch("tagging.subprocess.check_call")

    # Act
    tagging.create_local_tag(tmp_path, VERSION, COMMIT)

    # Assert
    mock_check_call.assert_not_called()


def test_create_local_tag_conflict(mocker: MockerFixture, tmp_path: Path) -> None:
    mocker.patch("tagging.local_tag_commit", return_value=OTHER_COMMIT)
    with pytest.raises(VersionAlreadyExists):
        tagging.create_local_tag(tmp_path, VERSION, COMMIT)


def test_create_local_tag_git_failure(mocker: MockerFixture, tmp_path: Path) -> None:
    mocker.patch("tagging.local_tag_commit", return_value=None)
    mocker.patch(
        "tagging.subprocess.check_call",
        side_effect=CalledProcessError(128, ["git", "tag"]),
    )
    with pytest.raises(TagPublishFailed):
        tagging.create_local_tag(tmp_path, VERSION, COMMIT)


@pytest.mark.asyncio
async def test_publish_tag(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.return_value = None
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act
    published = await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)

    # Assert
    assert published is True
    api.create_tag.assert_awaited_once_with(VERSION, COMMIT)
    mock_local.assert_called_once_with(tmp_path, VERSION, COMMIT)


@pytest.mark.asyncio
async def test_publish_tag_twice_is_a_noop(
    mocker: MockerFixture, tmp_path: Path
) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.side_effect = [None, COMMIT]
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act
    first = await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)
    second = await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)

    # Assert
    assert first is True
    assert second is False
    api.create_tag.assert_awaited_once_with(VERSION, COMMIT)
    assert mock_local.call_count == 2


@pytest.mark.asyncio
async def test_publish_tag_conflict(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.return_value = OTHER_COMMIT
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act / Assert
    with pytest.raises(VersionAlreadyExists):
        await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)
    api.create_tag.assert_not_awaited()
    mock_local.assert_not_called()


@pytest.mark.asyncio
async def test_publish_tag_remote_failure_leaves_no_local_tag(
    mocker: MockerFixture, tmp_path: Path
) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.return_value = None
    cause = githubapi.GitHubAPIError(401, "Bad credentials")
    api.create_tag.side_effect = cause
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act
    with pytest.raises(TagPublishFailed) as exc_info:
        await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)

    # Assert
    assert exc_info.value.__cause__ is cause
    assert "Bad credentials" in str(exc_info.value)
    mock_local.assert_not_called()


@pytest.mark.asyncio
async def test_publish_tag_lookup_failure(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.side_effect = githubapi.GitHubAPIError(500, "Server Error")
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act / Assert
    with pytest.raises(TagPublishFailed):
        await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)
    api.create_tag.assert_not_awaited()
    mock_local.assert_not_called()


@pytest.mark.asyncio
async def test_publish_tag_connection_failure(
    mocker: MockerFixture, tmp_path: Path
) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.return_value = None
    cause = aiohttp.ClientConnectionError("connection reset")
    api.create_tag.side_effect = cause
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act
    with pytest.raises(TagPublishFailed) as exc_info:
        await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)

    # Assert
    assert exc_info.value.__cause__ is cause
    mock_local.assert_not_called()


@pytest.mark.asyncio
async def test_publish_tag_lookup_timeout(mocker: MockerFixture, tmp_path: Path) -> None:
    # Arrange
    api = mock_api()
    api.tag_commit.side_effect = asyncio.TimeoutError()
    mock_local = mocker.patch("tagging.create_local_tag")

    # Act / Assert
    with pytest.raises(TagPublishFailed):
        await tagging.publish_tag(api, tmp_path, VERSION, COMMIT)
    api.create_tag.assert_not_awaited()
    mock_local.assert_not_called()
