import os
import re
import hashlib
import logging
import threading
from typing import Dict, List, Optional

from git import Repo
from git.exc import BadName, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from base_commit_source import BaseCommitSource
from data_classes import Cursor
from scan_errors import RateLimitedError, TargetNotFoundError, TransientFetchError

logger = logging.getLogger(__name__)

# git knows the empty tree without it being stored in the repository
EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

_NOT_FOUND_HINTS = ("not found", "does not exist", "no such", "unknown revision", "bad revision")
_RATE_LIMIT_HINTS = ("rate limit", "429", "too many requests")


class GitCommitSource(BaseCommitSource):
    """
    Reads commits and their diffs with GitPython.

    Local paths are opened in place. Remote URLs are mirror-cloned once into the cache
    directory and fetched again whenever the head of the target is resolved, so a
    resumed scan does not have to clone the repository again.
    """

    def __init__(self, cache_dir: str = ".repo_cache"):
        self.cache_dir = cache_dir
        self._repos: Dict[str, Repo] = {}
        self._lock = threading.Lock()

    def _is_remote_url(self, path: str) -> bool:
        return path.startswith(("http://", "https://", "git@", "ssh://"))

    def _mirror_path(self, url: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9]+", "_", url).strip("_")[-48:]
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:12]
        return os.path.join(self.cache_dir, f"{slug}-{digest}.git")

    def _translate_error(self, target: str, error: Exception) -> Exception:
        message = str(error).lower()
        if any(hint in message for hint in _RATE_LIMIT_HINTS):
            return RateLimitedError(f"Rate limited while reading {target}: {error}")
        if any(hint in message for hint in _NOT_FOUND_HINTS):
            return TargetNotFoundError(f"{target}: {error}")
        return TransientFetchError(f"Git operation failed for {target}: {error}")

    def _clone_remote_repo(self, url: str) -> Repo:
        path = self._mirror_path(url)
        logger.info(f"Cloning repository to {path}...")
        os.makedirs(self.cache_dir, exist_ok=True)
        try:
            return Repo.clone_from(url, path, mirror=True)
        except GitCommandError as e:
            raise self._translate_error(url, e)

    def _open_repo(self, target: str, refresh: bool = False) -> Repo:
        with self._lock:
            repo = self._repos.get(target)
            if repo is None:
                repo = self._setup_repo(target)
                self._repos[target] = repo
            elif refresh and self._is_remote_url(target):
                try:
                    repo.git.fetch("--prune", "origin")
                except GitCommandError as e:
                    raise self._translate_error(target, e)
            return repo

    def _setup_repo(self, target: str) -> Repo:
        if self._is_remote_url(target):
            path = self._mirror_path(target)
            if not os.path.exists(path):
                return self._clone_remote_repo(target)
            repo = Repo(path)
            try:
                repo.git.fetch("--prune", "origin")
            except GitCommandError as e:
                raise self._translate_error(target, e)
            return repo

        if not os.path.exists(target):
            raise TargetNotFoundError(f"Repository path does not exist: {target}")
        try:
            return Repo(target)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise TargetNotFoundError(f"Invalid Git repository: {target} ({e})")

    def resolve_head(self, target: str) -> str:
        repo = self._open_repo(target, refresh=True)
        try:
            return repo.head.commit.hexsha
        except ValueError:
            raise TargetNotFoundError(f"Repository {target} has no commits")

    def count_commits(self, target: str, head: str) -> int:
        repo = self._open_repo(target)
        try:
            return int(repo.git.rev_list("--count", head))
        except GitCommandError as e:
            raise self._translate_error(target, e)

    def fetch_commits(self, target: str, since_cursor: Optional[Cursor], limit: int) -> List[str]:
        head = since_cursor.head if since_cursor else self.resolve_head(target)
        position = since_cursor.position if since_cursor else 0
        repo = self._open_repo(target)
        try:
            return [c.hexsha for c in repo.iter_commits(head, max_count=limit, skip=position)]
        except (GitCommandError, BadName, ValueError) as e:
            raise self._translate_error(target, e)

    def list_commits_since(self, target: str, old_head: str, new_head: str) -> List[str]:
        repo = self._open_repo(target)
        try:
            return [c.hexsha for c in repo.iter_commits(f"{old_head}..{new_head}")]
        except (GitCommandError, BadName, ValueError) as e:
            raise self._translate_error(target, e)

    def fetch_diff(self, target: str, commit_id: str) -> str:
        """diff of a commit against its first parent, root commits against the empty tree"""

        repo = self._open_repo(target)
        try:
            commit = repo.commit(commit_id)
            base = commit.parents[0].hexsha if commit.parents else EMPTY_TREE_SHA
            raw = repo.git.diff(
                "--no-color",
                "--no-ext-diff",
                base,
                commit.hexsha,
                stdout_as_string=False,
            )
        except (GitCommandError, BadName, ValueError) as e:
            raise self._translate_error(target, e)

        return raw.decode("utf-8", errors="replace")
