"""Tests for the git service."""

from __future__ import annotations

import base64
import subprocess
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from ntnsync.services.git_service import (
    _GIT_REMOTE_TIMEOUT_SECONDS,
    _GIT_TIMEOUT_SECONDS,
    GitService,
    redact_url,
)

if TYPE_CHECKING:
    from pathlib import Path


def _bare_remote(tmp_path: Path) -> Path:
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
    return remote


def _commit(gs: GitService, name: str, content: str) -> str:
    (gs.repo_dir / name).write_text(content)
    commit_hash = gs.commit_all(f"add {name}")
    assert commit_hash is not None
    return commit_hash


class TestGitServiceInit:
    def test_init_creates_repo_on_branch(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path / "repo", branch="notes")
        gs.init_repo()
        assert gs.is_repo()
        head = subprocess.run(
            ["git", "symbolic-ref", "HEAD"],
            cwd=gs.repo_dir,
            capture_output=True,
            text=True,
            check=True,
        )
        assert head.stdout.strip() == "refs/heads/notes"

    def test_empty_repo_has_no_head(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path)
        gs.init_repo()
        assert gs.head_commit() is None
        assert not gs.has_commits()
        assert gs.commit_count() == 0


class TestGitServiceCommit:
    def test_commit_returns_hash(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path)
        gs.init_repo()
        commit_hash = _commit(gs, "page.md", "content")
        assert len(commit_hash) == 40
        assert gs.head_commit() == commit_hash

    def test_commit_returns_none_when_clean(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path)
        gs.init_repo()
        _commit(gs, "page.md", "content")
        assert gs.commit_all("nothing changed") is None
        assert gs.commit_count() == 1

    def test_commit_stages_deleted_files(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path)
        gs.init_repo()
        _commit(gs, "page.md", "content")
        (tmp_path / "page.md").unlink()
        assert gs.commit_all("delete page") is not None
        assert gs.commit_count() == 2

    def test_commit_uses_configured_author(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path, author_name="Sync Bot", author_email="bot@example.com")
        gs.init_repo()
        _commit(gs, "page.md", "content")
        author = subprocess.run(
            ["git", "log", "-1", "--format=%an <%ae>"],
            cwd=tmp_path,
            capture_output=True,
            text=True,
            check=True,
        )
        assert author.stdout.strip() == "Sync Bot <bot@example.com>"


class TestCredentials:
    def test_https_password_becomes_extra_header(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path, remote_url="https://git.example.com/n.git", password="tok")
        token = base64.b64encode(b"oauth2:tok").decode("ascii")
        assert gs._auth_args() == ["-c", f"http.extraHeader=Authorization: Basic {token}"]

    def test_ssh_url_has_no_auth_args(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path, remote_url="git@example.com:n.git", password="tok")
        assert gs._auth_args() == []

    def test_no_password_has_no_auth_args(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path, remote_url="https://git.example.com/n.git")
        assert gs._auth_args() == []

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://user:pw@git.example.com/n.git", "https://***@git.example.com/n.git"),
            ("https://git.example.com/n.git", "https://git.example.com/n.git"),
            ("git@example.com:n.git", "git@example.com:n.git"),
            ("", ""),
        ],
    )
    def test_redact_url(self, url: str, expected: str) -> None:
        assert redact_url(url) == expected


class TestRemoteSync:
    def test_push_then_clone(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        origin = GitService(tmp_path / "a", remote_url=str(remote))
        origin.init_repo()
        origin.ensure_remote()
        _commit(origin, "page.md", "hello")
        origin.push()

        clone = GitService(tmp_path / "b", remote_url=str(remote))
        clone.clone()
        assert (tmp_path / "b" / "page.md").read_text() == "hello"
        assert clone.head_commit() == origin.head_commit()

    def test_clone_of_empty_remote_initializes_locally(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        gs = GitService(tmp_path / "work", remote_url=str(remote))
        assert gs.remote_is_empty()
        gs.clone()
        assert gs.is_repo()
        assert not gs.has_commits()
        url = gs._run("remote", "get-url", "origin").stdout.strip()
        assert url == str(remote)

    def test_pull_from_empty_remote_is_noop(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        gs = GitService(tmp_path / "work", remote_url=str(remote))
        gs.init_repo()
        gs.ensure_remote()
        gs.pull()
        assert not gs.has_commits()

    def test_push_without_commits_is_noop(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        gs = GitService(tmp_path / "work", remote_url=str(remote))
        gs.init_repo()
        gs.ensure_remote()
        gs.push()
        assert gs._run("ls-remote", str(remote)).stdout == ""

    def test_rejected_push_pulls_and_retries(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        first = GitService(tmp_path / "a", remote_url=str(remote))
        first.init_repo()
        first.ensure_remote()
        _commit(first, "one.md", "1")
        first.push()

        second = GitService(tmp_path / "b", remote_url=str(remote))
        second.clone()
        _commit(first, "two.md", "2")
        first.push()

        _commit(second, "three.md", "3")
        second.push()
        assert (tmp_path / "b" / "two.md").exists()

        first.pull()
        assert (tmp_path / "a" / "three.md").read_text() == "3"

    def test_ensure_remote_repoints_url(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path, remote_url="https://old.example.com/n.git")
        gs.init_repo()
        gs.ensure_remote()
        gs.remote_url = "https://new.example.com/n.git"
        gs.ensure_remote()
        url = gs._run("remote", "get-url", "origin").stdout.strip()
        assert url == "https://new.example.com/n.git"


class TestGitTimeout:
    """subprocess.run is called with timeout kwarg."""

    def test_run_passes_timeout(self, tmp_path: Path) -> None:
        gs = GitService(tmp_path)
        gs.init_repo()

        with patch("subprocess.run", wraps=subprocess.run) as mock_run:
            gs.head_commit()
        assert mock_run.call_args.kwargs["timeout"] == _GIT_TIMEOUT_SECONDS

    def test_remote_commands_use_longer_timeout(self, tmp_path: Path) -> None:
        remote = _bare_remote(tmp_path)
        gs = GitService(tmp_path / "work", remote_url=str(remote))

        with patch("subprocess.run", wraps=subprocess.run) as mock_run:
            gs.ls_remote()
        assert mock_run.call_args.kwargs["timeout"] == _GIT_REMOTE_TIMEOUT_SECONDS

    def test_timeout_constants_are_positive(self) -> None:
        assert 0 < _GIT_TIMEOUT_SECONDS <= _GIT_REMOTE_TIMEOUT_SECONDS
