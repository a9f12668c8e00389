"""Git service: store directory versioning via git CLI."""

from __future__ import annotations

import base64
import logging
import subprocess
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"

_GIT_TIMEOUT_SECONDS = 60
_GIT_REMOTE_TIMEOUT_SECONDS = 300
_REJECTED_MARKERS = ("non-fast-forward", "fetch first", "[rejected]")


def redact_url(url: str) -> str:
    """Mask credentials embedded in an HTTP(S) remote URL."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


class GitService:
    """Wraps git CLI operations on the store directory.

    Remote operations always target the single ``origin`` remote. HTTPS
    credentials are passed per command as an ``http.extraHeader`` so they are
    never written to the repository config.
    """

    def __init__(
        self,
        repo_dir: Path,
        *,
        branch: str = "main",
        author_name: str = "ntnsync",
        author_email: str = "ntnsync@local",
        remote_url: str = "",
        password: str = "",
    ) -> None:
        self.repo_dir = repo_dir
        self.branch = branch
        self.author_name = author_name
        self.author_email = author_email
        self.remote_url = remote_url
        self.password = password

    def _auth_args(self) -> list[str]:
        if not self.password or not self.remote_url.startswith("https://"):
            return []
        token = base64.b64encode(f"oauth2:{self.password}".encode()).decode("ascii")
        return ["-c", f"http.extraHeader=Authorization: Basic {token}"]

    def _run(
        self,
        *args: str,
        check: bool = True,
        remote: bool = False,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command in the repository directory."""
        prefix = self._auth_args() if remote else []
        return subprocess.run(
            ["git", *prefix, *args],
            cwd=cwd or self.repo_dir,
            check=check,
            capture_output=True,
            text=True,
            timeout=_GIT_REMOTE_TIMEOUT_SECONDS if remote else _GIT_TIMEOUT_SECONDS,
        )

    # ── Repository setup ─────────────────────────────

    def is_repo(self) -> bool:
        return (self.repo_dir / ".git").exists()

    def init_repo(self) -> None:
        """Initialize a repository whose unborn HEAD points at the configured branch."""
        self.repo_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        self._run("init")
        self._run("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")
        logger.info("Initialized git repo in %s (branch %s)", self.repo_dir, self.branch)

    def remote_is_empty(self) -> bool:
        """Return True when the remote exists but has no refs."""
        result = self._run("ls-remote", self.remote_url, remote=True, cwd=self.repo_dir.parent)
        return not result.stdout.strip()

    def clone(self) -> None:
        """Clone the remote branch into the repository directory.

        Falls back to a local init plus remote registration when the remote
        repository is empty.
        """
        parent = self.repo_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Cloning %s (branch %s) into %s",
            redact_url(self.remote_url),
            self.branch,
            self.repo_dir,
        )
        try:
            self._run(
                "clone",
                "--branch",
                self.branch,
                "--single-branch",
                self.remote_url,
                str(self.repo_dir),
                remote=True,
                cwd=parent,
            )
        except subprocess.CalledProcessError as exc:
            if not self.remote_is_empty():
                logger.error(
                    "Failed to clone %s: %s",
                    redact_url(self.remote_url),
                    exc.stderr.strip() if exc.stderr else "no stderr",
                )
                raise
            logger.info("Remote repository is empty, initializing locally")
            self.init_repo()
            self.ensure_remote()
            return
        if not self.has_commits():
            # Cloning an empty repository leaves HEAD on git's default branch
            self._run("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")
        logger.info("Clone complete")

    def ensure_remote(self) -> None:
        """Register ``origin`` or repoint it when its URL differs from the configured one."""
        result = self._run("remote", "get-url", REMOTE_NAME, check=False)
        if result.returncode != 0:
            logger.info("Adding remote %s: %s", REMOTE_NAME, redact_url(self.remote_url))
            self._run("remote", "add", REMOTE_NAME, self.remote_url)
            return
        current = result.stdout.strip()
        if current != self.remote_url:
            logger.info(
                "Updating remote %s URL from %s to %s",
                REMOTE_NAME,
                redact_url(current),
                redact_url(self.remote_url),
            )
            self._run("remote", "set-url", REMOTE_NAME, self.remote_url)

    # ── Commits ──────────────────────────────────────

    def has_staged_changes(self) -> bool:
        result = self._run("diff", "--cached", "--quiet", check=False)
        return result.returncode != 0

    def commit_all(self, message: str) -> str | None:
        """Stage all changes and commit. Returns commit hash or None if nothing to commit."""
        self._run("add", "-A")
        if not self.has_staged_changes():
            return None
        self._run(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "commit",
            "--no-verify",
            "-m",
            message,
        )
        return self.head_commit()

    def head_commit(self) -> str | None:
        """Return the current HEAD commit hash, or None if the repo has no commits."""
        result = self._run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def has_commits(self) -> bool:
        return self.head_commit() is not None

    def commit_count(self) -> int:
        result = self._run("rev-list", "--count", "HEAD", check=False)
        if result.returncode != 0:
            return 0
        return int(result.stdout.strip() or 0)

    # ── Remote sync ──────────────────────────────────

    def _remote_branch_exists(self) -> bool:
        result = self._run(
            "ls-remote", "--heads", REMOTE_NAME, self.branch, remote=True, check=False
        )
        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, "git ls-remote", output=result.stdout, stderr=result.stderr
            )
        return bool(result.stdout.strip())

    def pull(self) -> None:
        """Fetch and fast-forward to ``origin/<branch>``.

        An empty remote and an already up-to-date branch are no-ops. Diverged
        history is merged; a conflicting merge is resolved in favour of the remote.
        """
        if not self._remote_branch_exists():
            logger.info("Remote repository is empty, nothing to pull")
            return
        logger.info("Pulling from %s (branch %s)", redact_url(self.remote_url), self.branch)
        self._run("fetch", REMOTE_NAME, self.branch, remote=True)
        remote_ref = f"{REMOTE_NAME}/{self.branch}"
        result = self._run("merge", "--ff-only", remote_ref, check=False)
        if result.returncode == 0:
            if "Already up to date" in result.stdout:
                logger.info("Already up to date")
            else:
                logger.info("Pull complete")
            return
        logger.info("Branches diverged, merging %s", remote_ref)
        merge = self._run(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "merge",
            "--no-edit",
            remote_ref,
            check=False,
        )
        if merge.returncode == 0:
            return
        self._run("merge", "--abort", check=False)
        logger.warning("Merge with %s failed, resetting to the remote branch", remote_ref)
        self._run("reset", "--hard", remote_ref)

    def push(self) -> None:
        """Push HEAD to ``origin/<branch>``, pulling and retrying once when rejected."""
        if not self.has_commits():
            logger.info("Nothing to push (no commits)")
            return
        refspec = f"HEAD:refs/heads/{self.branch}"
        logger.info("Pushing to %s (branch %s)", redact_url(self.remote_url), self.branch)
        result = self._run("push", REMOTE_NAME, refspec, remote=True, check=False)
        if result.returncode == 0:
            logger.info("Push complete")
            return
        if not any(marker in result.stderr for marker in _REJECTED_MARKERS):
            raise subprocess.CalledProcessError(
                result.returncode, "git push", output=result.stdout, stderr=result.stderr
            )
        logger.warning("Push rejected (non-fast-forward), pulling and retrying")
        self.pull()
        self._run("push", REMOTE_NAME, refspec, remote=True)
        logger.info("Push complete after pull")

    def ls_remote(self) -> str:
        """List remote refs; raises CalledProcessError when the remote is unreachable."""
        return self._run("ls-remote", self.remote_url, remote=True, cwd=self.repo_dir.parent).stdout
