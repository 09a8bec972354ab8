"""Git working-copy management backed by GitPython."""
from __future__ import annotations

import logging
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

DEFAULT_REMOTE = "origin"

_log = logging.getLogger(__name__)


class RepositoryError(RuntimeError):
    """Raised when a working copy cannot be opened, cloned, or updated."""


class GitRepository:
    """A non-bare working copy that tracks a single remote."""

    def __init__(self, repo: Repo) -> None:
        """Wrap an already opened GitPython ``Repo``."""
        if repo.bare or repo.working_tree_dir is None:
            raise RepositoryError(f"Repository at {repo.git_dir} has no working tree.")
        self._repo = repo

    @classmethod
    def open_or_clone(cls, remote_url: str, local_path: Path) -> GitRepository:
        """Open the working copy at *local_path*, cloning *remote_url* if absent."""
        try:
            repo = Repo(local_path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            _log.info("Cloning %s into %s", remote_url, local_path)
            try:
                repo = Repo.clone_from(remote_url, local_path)
            except GitCommandError as exc:
                raise RepositoryError(
                    f"Could not open or create git repo at {local_path}: {exc}"
                ) from exc
        return cls(repo)

    @property
    def repo(self) -> Repo:
        """The underlying GitPython repository."""
        return self._repo

    def working_tree_root(self) -> Path:
        """Return the root directory of the checked-out tree."""
        return Path(str(self._repo.working_tree_dir))

    def remote_url(self, name: str = DEFAULT_REMOTE) -> str | None:
        """Return the URL configured for remote *name*, if any."""
        if name not in {remote.name for remote in self._repo.remotes}:
            return None
        return self._repo.remote(name).url

    def set_remote(self, url: str, name: str = DEFAULT_REMOTE) -> None:
        """Point remote *name* at *url*, creating the remote when missing."""
        try:
            if name in {remote.name for remote in self._repo.remotes}:
                if self._repo.remote(name).url != url:
                    self._repo.remote(name).set_url(url)
            else:
                self._repo.create_remote(name, url)
        except (GitCommandError, OSError) as exc:
            raise RepositoryError(
                f"Error while setting remote {name} on git repo at "
                f"{self.working_tree_root()}: {exc}"
            ) from exc

    def fetch_and_merge(self, remote_name: str = DEFAULT_REMOTE) -> str:
        """Pull the latest changes from *remote_name* into the working copy."""
        try:
            output = self._repo.git.pull(remote_name)
        except GitCommandError as exc:
            raise RepositoryError(
                f"git pull from {remote_name} failed in {self.working_tree_root()}: "
                f"{exc.stderr.strip() if isinstance(exc.stderr, str) else exc}"
            ) from exc
        _log.debug("git pull %s: %s", remote_name, output)
        return output

    def head_commit(self) -> str | None:
        """Return the hex SHA of HEAD, or ``None`` for an empty repository."""
        try:
            return self._repo.head.commit.hexsha
        except ValueError:
            return None

    def close(self) -> None:
        """Release any git subprocesses held by GitPython."""
        self._repo.close()


__all__ = ["DEFAULT_REMOTE", "GitRepository", "RepositoryError"]
