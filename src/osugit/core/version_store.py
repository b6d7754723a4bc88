"""
Per-record git histories.

Each record id owns an independent, non-bare git repository at
`<storage_root>/<record_id>`. The worktree of that repository is the working
directory callers stage files in; `commit` snapshots whatever is there.

Histories are strictly linear for our writes: every commit has exactly one
parent (the current HEAD) except the empty root commit created on first use.
Commits against the same record must not run concurrently; callers are
expected to dedicate at most one writer per record at a time.
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pygit2

from osugit.errors import CommitError
from osugit.utils.log import get_logger
from osugit.utils.paths import record_path

log = get_logger(__name__)

SYSTEM_NAME = "osugit"
SYSTEM_EMAIL = "git@osu.technology"
ROOT_MESSAGE = "Initial commit"


@dataclass
class HistoryHandle:
    record_id: int
    path: Path
    repo: pygit2.Repository = field(repr=False)


@dataclass
class CommitInfo:
    id: str
    message: str
    author_name: str
    author_email: str
    authored_at: datetime
    parent_ids: List[str]


def _signature(name: str, email: str, when: datetime) -> pygit2.Signature:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    offset = int(when.utcoffset().total_seconds() // 60)
    return pygit2.Signature(name, email, int(when.timestamp()), offset)


def _signature_time(signature: pygit2.Signature) -> datetime:
    tz = timezone(timedelta(minutes=signature.offset))
    return datetime.fromtimestamp(signature.time, tz)


class VersionStore:
    """
    An arena of per-record histories addressed by record id, opened lazily.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def open_or_init(self, record_id: int) -> HistoryHandle:
        """
        Opens the history for `record_id`, creating it with an empty root commit
        the first time. Safe to call repeatedly.
        """
        path = record_path(self.root, record_id)
        try:
            if (path / ".git").exists():
                repo = pygit2.Repository(str(path))
            else:
                log.debug("history_create", record_id=record_id, path=str(path))
                path.mkdir(parents=True, exist_ok=True)
                repo = pygit2.init_repository(str(path))

            # Also covers a previous init that died before its first commit
            if repo.head_is_unborn:
                self._commit_root(repo, record_id)
        except pygit2.GitError as e:
            raise CommitError(f"Could not open history for {record_id}: {e}") from e

        return HistoryHandle(record_id=record_id, path=path, repo=repo)

    def _commit_root(self, repo: pygit2.Repository, record_id: int):
        sig = pygit2.Signature(SYSTEM_NAME, SYSTEM_EMAIL, int(time.time()), 0)
        empty_tree = repo.TreeBuilder().write()
        oid = repo.create_commit("HEAD", sig, sig, ROOT_MESSAGE, empty_tree, [])
        log.debug("history_root_committed", record_id=record_id, commit=str(oid))

    def working_directory(self, handle: HistoryHandle) -> Path:
        return handle.path

    def _working_files(self, handle: HistoryHandle) -> List[str]:
        files = []
        for dirpath, dirnames, filenames in os.walk(handle.path):
            # Never descend into the object store
            if ".git" in dirnames:
                dirnames.remove(".git")
            for name in filenames:
                relative = Path(dirpath, name).relative_to(handle.path)
                files.append(relative.as_posix())
        return sorted(files)

    def commit(
        self,
        handle: HistoryHandle,
        author_name: str,
        author_email: str,
        authored_at: datetime,
        message: str,
    ) -> str:
        """
        Stages every file present in the working directory and commits it on top of HEAD.

        Files that disappeared from the working directory stay tracked: staging is
        additive only. A commit is created even when nothing changed.

        Returns:
            Hex id of the new commit.
        """
        repo = handle.repo
        try:
            index = repo.index
            index.read()
            for relative in self._working_files(handle):
                index.add(relative)
            index.write()
            tree = index.write_tree()

            parent = repo.head.target
            sig = _signature(author_name, author_email, authored_at)
            oid = repo.create_commit("HEAD", sig, sig, message, tree, [parent])
        except (pygit2.GitError, OSError, ValueError) as e:
            raise CommitError(f"Could not commit record {handle.record_id}: {e}") from e

        log.info("history_committed", record_id=handle.record_id, commit=str(oid))
        return str(oid)

    def head(self, handle: HistoryHandle) -> str:
        return str(handle.repo.head.target)

    def log(self, handle: HistoryHandle) -> List[CommitInfo]:
        """
        Commits reachable from HEAD along first parents, newest first.
        The last entry is always the root commit.
        """
        history = []
        commit = handle.repo[handle.repo.head.target]
        while True:
            history.append(CommitInfo(
                id=str(commit.id),
                message=commit.message,
                author_name=commit.author.name,
                author_email=commit.author.email,
                authored_at=_signature_time(commit.author),
                parent_ids=[str(p) for p in commit.parent_ids],
            ))
            if not commit.parents:
                break
            commit = commit.parents[0]
        return history

    def record_ids(self) -> List[int]:
        """Ids of every record that has a history under the storage root."""
        ids = []
        for child in self.root.iterdir():
            if child.name.isdigit() and (child / ".git").exists():
                ids.append(int(child.name))
        return sorted(ids)
