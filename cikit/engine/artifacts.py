"""Run-scoped artifact store (stash) and the external archive sink."""

from __future__ import annotations

import functools
import logging
import os
import re
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from cikit.errors import DuplicateName, EmptyArtifact, NotFound

logger = logging.getLogger(__name__)

MATCH_ALL: tuple[str, ...] = ("**",)


def _translate_segment(segment: str) -> str:
    parts: list[str] = []
    i, n = 0, len(segment)
    while i < n:
        ch = segment[i]
        i += 1
        if ch == "*":
            parts.append("[^/]*")
        elif ch == "?":
            parts.append("[^/]")
        elif ch == "[":
            j = i
            if j < n and segment[j] in "!^":
                j += 1
            if j < n and segment[j] == "]":
                j += 1
            while j < n and segment[j] != "]":
                j += 1
            if j >= n:
                parts.append(re.escape(ch))
                continue
            body = segment[i:j].replace("\\", "\\\\")
            i = j + 1
            if body[0] in "!^":
                body = "^" + body[1:]
            parts.append(f"[{body}]")
        else:
            parts.append(re.escape(ch))
    return "".join(parts)


@functools.lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """
    Translate a path glob into a regex.

    `*`, `?` and `[...]` never cross `/`. A `**` segment matches zero or more
    whole directories; a trailing `**` matches everything below its prefix.
    """

    segments = pattern.split("/")
    parts: list[str] = []
    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        if segment == "**":
            parts.append(".*" if last else "(?:[^/]+/)*")
        else:
            parts.append(_translate_segment(segment) + ("" if last else "/"))
    return re.compile("".join(parts) + r"\Z")


def _pattern_matches(relpath: str, pattern: str) -> bool:
    pattern = pattern.lstrip("/")
    if pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern in ("**", "**/*"):
        return True
    # A bare file pattern ("*.rpm") matches at any depth.
    if "/" not in pattern:
        relpath = relpath.rsplit("/", 1)[-1]
    return _compile_pattern(pattern).match(relpath) is not None


def matches(relpath: str, include: Sequence[str], exclude: Sequence[str] = ()) -> bool:
    """Return True when `relpath` (posix separators) is selected by the pattern lists."""

    if not any(_pattern_matches(relpath, pattern) for pattern in include):
        return False
    return not any(_pattern_matches(relpath, pattern) for pattern in exclude)


def _links_to_ancestor(path: str) -> bool:
    if not os.path.islink(path):
        return False
    target = os.path.realpath(path)
    parent = os.path.realpath(os.path.dirname(path))
    return parent == target or parent.startswith(target + os.sep)


def select_files(root: str, include: Sequence[str], exclude: Sequence[str] = ()) -> list[str]:
    """
    List files under `root` selected by include/exclude globs, sorted.

    Symlinked files and directories are followed and reported under their link
    path. A directory link pointing back at one of its ancestors is not descended.
    """

    selected: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
        dirnames[:] = sorted(
            name for name in dirnames if not _links_to_ancestor(os.path.join(dirpath, name))
        )
        for filename in sorted(filenames):
            full = os.path.join(dirpath, filename)
            relpath = os.path.relpath(full, root).replace(os.sep, "/")
            if not matches(relpath, include, exclude):
                continue
            if not os.path.isfile(full):
                logger.warning("Skipping %s: not a regular file (dangling symlink?)", full)
                continue
            selected.append(relpath)
    return sorted(selected)


@dataclass(frozen=True)
class ArtifactId:
    run_id: str
    name: str
    producer: str
    files: tuple[str, ...]


@dataclass(frozen=True)
class ArtifactBundle:
    name: str
    files: dict[str, bytes] = field(default_factory=dict)

    def extract_to(self, dest: str) -> list[str]:
        written: list[str] = []
        for relpath, payload in sorted(self.files.items()):
            target = os.path.join(dest, *relpath.split("/"))
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as handle:
                handle.write(payload)
            written.append(relpath)
        return written


@dataclass
class _Entry:
    artifact: ArtifactId
    path: str
    committed: bool = False


class ArtifactStore:
    """
    Keyed by `(run_id, name)`.

    Publishing copies the selected files into a staging directory which is then
    renamed into place, so consumers never observe a partial bundle. Entries stay
    pending until their producer stage is committed; a producer that fails is
    discarded and its entries are never fetchable.
    """

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)
        self._lock = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._entries: dict[tuple[str, str], _Entry] = {}

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _entry_dir(self, run_id: str, name: str) -> str:
        return os.path.join(self.root, run_id, "stash", name)

    def publish(
        self,
        run_id: str,
        name: str,
        source_dir: str,
        *,
        include: Sequence[str] = MATCH_ALL,
        exclude: Sequence[str] = (),
        producer: str,
    ) -> ArtifactId:
        key = (run_id, name)
        with self._key_lock(key):
            with self._lock:
                if key in self._entries:
                    raise DuplicateName(run_id, name)

            files = select_files(source_dir, include, exclude)
            if not files:
                raise EmptyArtifact(
                    f"Artifact {name!r} matched no files under {source_dir} "
                    f"(include={list(include)}, exclude={list(exclude)})"
                )

            final_dir = self._entry_dir(run_id, name)
            staging_dir = os.path.join(self.root, run_id, "staging", f"{name}-{uuid.uuid4().hex[:8]}")
            os.makedirs(os.path.dirname(final_dir), exist_ok=True)
            try:
                for relpath in files:
                    target = os.path.join(staging_dir, *relpath.split("/"))
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    shutil.copy2(os.path.join(source_dir, *relpath.split("/")), target)
                os.makedirs(staging_dir, exist_ok=True)
                if os.path.exists(final_dir):
                    shutil.rmtree(final_dir)
                os.replace(staging_dir, final_dir)
            except BaseException:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise

            artifact = ArtifactId(run_id=run_id, name=name, producer=producer, files=tuple(files))
            with self._lock:
                self._entries[key] = _Entry(artifact=artifact, path=final_dir)
            logger.debug("Published artifact %s/%s (%d files)", run_id, name, len(files))
            return artifact

    def commit_producer(self, run_id: str, producer: str) -> list[str]:
        with self._lock:
            names = [
                entry.artifact.name
                for (entry_run, _name), entry in self._entries.items()
                if entry_run == run_id and entry.artifact.producer == producer
            ]
            for name in names:
                self._entries[(run_id, name)].committed = True
            return sorted(names)

    def discard_producer(self, run_id: str, producer: str) -> list[str]:
        with self._lock:
            doomed = [
                (key, entry)
                for key, entry in self._entries.items()
                if key[0] == run_id and entry.artifact.producer == producer
            ]
            for key, _entry in doomed:
                del self._entries[key]
        for _key, entry in doomed:
            shutil.rmtree(entry.path, ignore_errors=True)
        return sorted(key[1] for key, _entry in doomed)

    def fetch(
        self,
        run_id: str,
        name: str,
        *,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
    ) -> ArtifactBundle:
        """Return the published files, optionally narrowed by retrieval-time filters."""

        key = (run_id, name)
        with self._key_lock(key):
            with self._lock:
                entry = self._entries.get(key)
            if entry is None:
                raise NotFound(run_id, name)
            if not entry.committed:
                raise NotFound(
                    run_id, name, reason=f"producer {entry.artifact.producer} has not succeeded"
                )

            narrowing = tuple(include) or MATCH_ALL
            files: dict[str, bytes] = {}
            for relpath in entry.artifact.files:
                if not matches(relpath, narrowing, exclude):
                    continue
                with open(os.path.join(entry.path, *relpath.split("/")), "rb") as handle:
                    files[relpath] = handle.read()
            return ArtifactBundle(name=name, files=files)

    def names(self, run_id: str, *, committed_only: bool = True) -> tuple[str, ...]:
        with self._lock:
            return tuple(
                sorted(
                    key[1]
                    for key, entry in self._entries.items()
                    if key[0] == run_id and (entry.committed or not committed_only)
                )
            )

    def drop_run(self, run_id: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == run_id]:
                del self._entries[key]
        shutil.rmtree(os.path.join(self.root, run_id), ignore_errors=True)


class Archiver:
    """External archive sink; copies outlive the run."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def stage_dir(self, run_id: str, stage: str) -> str:
        return os.path.join(self.root, run_id, stage)

    def archive_files(
        self,
        run_id: str,
        stage: str,
        source_dir: str,
        *,
        include: Sequence[str],
        exclude: Sequence[str] = (),
    ) -> list[str]:
        dest = self.stage_dir(run_id, stage)
        copied: list[str] = []
        for relpath in select_files(source_dir, include, exclude):
            target = os.path.join(dest, *relpath.split("/"))
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copy2(os.path.join(source_dir, *relpath.split("/")), target)
            copied.append(os.path.join(dest, *relpath.split("/")))
        return copied

    def archive_log(self, run_id: str, stage: str, log_path: str) -> str:
        dest = self.stage_dir(run_id, stage)
        os.makedirs(dest, exist_ok=True)
        target = os.path.join(dest, f"{stage}.log")
        if os.path.exists(log_path):
            shutil.copy2(log_path, target)
        else:
            with open(target, "w", encoding="utf-8"):
                pass
        return target

    def list_run(self, run_id: str) -> Iterable[str]:
        base = os.path.join(self.root, run_id)
        if not os.path.isdir(base):
            return []
        return select_files(base, MATCH_ALL)
