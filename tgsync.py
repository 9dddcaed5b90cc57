#!/usr/bin/env python3
"""
tgsync.py - poll-based directory watcher that relays new or modified files to
a Telegram chat through an uploader (see telegram_api.py).

Each watched directory gets its own poller thread. A poll cycle scans the
directory, drops paths rejected by the allow/deny filter, compares the rest
against an in-memory size/mtime snapshot and sends every new or changed file
as a document, audio, photo or video attachment. Failures are logged per file;
the watch loop itself never stops on an error.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Pattern, Protocol, Union

from tqdm import tqdm

DEFAULT_INTERVAL = 5.0

AUDIO_EXTS = {'.mp3', '.wav', '.ogg', '.m4a', '.flac', '.aac', '.opus'}
PHOTO_EXTS = {'.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp'}
VIDEO_EXTS = {'.mp4', '.avi', '.mov', '.mkv', '.webm', '.flv', '.wmv'}

logger = logging.getLogger("tgsync")


def _expand_path(path: str) -> str:
    """Return a normalized absolute path with user expansion."""

    return os.path.abspath(os.path.expanduser(path))


class SyncError(Exception):
    """Base class for errors raised by the sync engine."""


class RegistrationError(SyncError):
    """Raised when a directory cannot be placed under watch."""


class ScanError(SyncError):
    """Raised when the root of a scan cannot be listed."""


class DispatchError(SyncError):
    """Raised when a file could not be handed to the uploader."""

    def __init__(self, message: str, *, path: str = '', category: Optional['Category'] = None,
                 retryable: bool = True):
        super().__init__(message)
        self.path = path
        self.category = category
        self.retryable = retryable


class Uploader(Protocol):
    """Outbound delivery capability, one send method per attachment kind."""

    def send_document(self, chat_id: str, path: str, caption: str) -> Any: ...

    def send_audio(self, chat_id: str, path: str, caption: str) -> Any: ...

    def send_photo(self, chat_id: str, path: str, caption: str) -> Any: ...

    def send_video(self, chat_id: str, path: str, caption: str) -> Any: ...

    def send_message(self, chat_id: str, text: str) -> Any: ...


# ─── Filter policy ─────────────────────────────────────────────────────────────

PatternLike = Union[str, Pattern[str]]


def _compile_patterns(patterns: Iterable[PatternLike]) -> tuple[Pattern[str], ...]:
    compiled: list[Pattern[str]] = []
    for pattern in patterns:
        if isinstance(pattern, str):
            compiled.append(re.compile(pattern))
        else:
            compiled.append(pattern)
    return tuple(compiled)


class FilterPolicy:
    """Allow/deny regular expressions evaluated against absolute paths.

    A path is eligible when it matches none of the deny patterns and passes
    the allow check. With ``match_all`` (the default) every allow pattern has
    to match; otherwise one matching allow pattern is enough. An empty allow
    list lets everything through.
    """

    def __init__(self, allow: Iterable[PatternLike] = (), deny: Iterable[PatternLike] = (),
                 match_all: bool = True):
        self.allow = _compile_patterns(allow)
        self.deny = _compile_patterns(deny)
        self.match_all = match_all

    def __repr__(self) -> str:
        return (
            f"FilterPolicy(allow={[p.pattern for p in self.allow]!r}, "
            f"deny={[p.pattern for p in self.deny]!r}, match_all={self.match_all!r})"
        )

    def is_eligible(self, path: str) -> bool:
        for pattern in self.deny:
            if pattern.search(path):
                logger.debug("Rejecting %s: matches deny pattern %s", path, pattern.pattern)
                return False

        if not self.allow:
            return True

        if self.match_all:
            for pattern in self.allow:
                if not pattern.search(path):
                    logger.debug("Rejecting %s: does not match allow pattern %s", path, pattern.pattern)
                    return False
            return True

        if any(pattern.search(path) for pattern in self.allow):
            return True
        logger.debug("Rejecting %s: matches no allow pattern", path)
        return False

    def filter(self, paths: Iterable[str]) -> list[str]:
        return [path for path in paths if self.is_eligible(path)]


# ─── Snapshot store ────────────────────────────────────────────────────────────

@dataclass
class FileRecord:
    path: str
    size: int
    mtime: float
    last_sync: float


@dataclass(frozen=True)
class Observation:
    """A new or changed file seen by the store but not yet recorded."""

    path: str
    size: int
    mtime: float
    is_new: bool = False


class SnapshotStore:
    """In-memory size/mtime snapshot keyed by absolute file path.

    ``diff`` is the one-step form: it reports new or changed paths and records
    them in the same pass (as does ``changes(paths, commit=True)``). Plain
    ``changes`` reports the same set without recording anything, so the
    caller can ``commit`` each observation once the file has actually been
    delivered (or ``release`` it to have it reported again).
    Paths handed out by ``changes`` stay in flight until then and are not
    reported to a second caller.
    """

    def __init__(self) -> None:
        self._records: dict[str, FileRecord] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._records

    def get(self, path: str) -> Optional[FileRecord]:
        with self._lock:
            record = self._records.get(path)
            if record is None:
                return None
            return FileRecord(record.path, record.size, record.mtime, record.last_sync)

    def _observe(self, path: str) -> Optional[Observation]:
        # Caller holds self._lock.
        try:
            stat = os.stat(path)
        except OSError:
            # Vanished between scan and stat.
            return None
        record = self._records.get(path)
        if record is None:
            return Observation(path, stat.st_size, stat.st_mtime, is_new=True)
        if stat.st_mtime > record.mtime or stat.st_size != record.size:
            return Observation(path, stat.st_size, stat.st_mtime)
        return None

    def _record(self, observation: Observation) -> None:
        # Caller holds self._lock.
        now = time.time()
        record = self._records.get(observation.path)
        if record is None:
            self._records[observation.path] = FileRecord(
                observation.path, observation.size, observation.mtime, now,
            )
        else:
            record.size = observation.size
            record.mtime = observation.mtime
            record.last_sync = now

    def diff(self, paths: Iterable[str]) -> list[str]:
        return [observation.path for observation in self.changes(paths, commit=True)]

    def changes(self, paths: Iterable[str], commit: bool = False) -> list[Observation]:
        found: list[Observation] = []
        with self._lock:
            for path in paths:
                if path in self._in_flight:
                    logger.debug("Skipping %s: delivery already in progress", path)
                    continue
                observation = self._observe(path)
                if observation is None:
                    continue
                if commit:
                    self._record(observation)
                else:
                    self._in_flight.add(path)
                found.append(observation)
        return found

    def commit(self, observation: Observation) -> None:
        with self._lock:
            self._record(observation)
            self._in_flight.discard(observation.path)

    def release(self, path: str) -> None:
        with self._lock:
            self._in_flight.discard(path)


# ─── Directory scanner ─────────────────────────────────────────────────────────

def _walk(root: str) -> Iterator[str]:
    try:
        entries = list(os.scandir(root))
    except OSError as exc:
        raise ScanError(f"Cannot list {root}: {exc}") from exc

    pending: list[list[os.DirEntry]] = [entries]
    while pending:
        batch = pending.pop()
        subdirs: list[list[os.DirEntry]] = []
        for entry in batch:
            try:
                if entry.is_dir(follow_symlinks=False):
                    with os.scandir(entry.path) as it:
                        subdirs.append(list(it))
                elif entry.is_file(follow_symlinks=False):
                    yield entry.path
            except OSError as exc:
                logger.debug("Skipping %s: %s", entry.path, exc)
        # Keep subdirectories in listing order on the stack.
        pending.extend(reversed(subdirs))


def scan_directory(root: str) -> list[str]:
    """Return every regular file below *root* as an absolute path.

    Symlinks are neither followed nor reported. Entries that cannot be read
    are skipped; a root that cannot be listed raises :class:`ScanError`.
    """

    root = _expand_path(root)
    if not os.path.isdir(root):
        raise ScanError(f"{root} is not a directory")
    return list(_walk(root))


# ─── Watch registry ────────────────────────────────────────────────────────────

class WatchRegistry:
    """Directories under watch; registering a known directory is a no-op."""

    def __init__(self) -> None:
        self._dirs: dict[str, None] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._dirs)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        with self._lock:
            return _expand_path(path) in self._dirs

    def register(self, path: str) -> bool:
        """Place *path* under watch; return True when it was not watched yet."""

        if not path:
            raise RegistrationError("Directory path cannot be empty")
        root = _expand_path(path)
        if not os.path.exists(root):
            raise RegistrationError(f"Watch directory {root} does not exist")
        if not os.path.isdir(root):
            raise RegistrationError(f"Watch path {root} is not a directory")
        with self._lock:
            if root in self._dirs:
                return False
            self._dirs[root] = None
        logger.debug("Registered watch directory %s", root)
        return True

    def directories(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._dirs)


# ─── Dispatch router ───────────────────────────────────────────────────────────

class Category(str, Enum):
    DOCUMENT = "document"
    AUDIO = "audio"
    PHOTO = "photo"
    VIDEO = "video"


def classify(path: str) -> Category:
    ext = os.path.splitext(path)[1].lower()
    if ext in AUDIO_EXTS:
        return Category.AUDIO
    if ext in PHOTO_EXTS:
        return Category.PHOTO
    if ext in VIDEO_EXTS:
        return Category.VIDEO
    return Category.DOCUMENT


def caption_for(path: str) -> str:
    return f"File: {os.path.basename(path)}"


# ─── Sync service ──────────────────────────────────────────────────────────────

@dataclass
class CycleSummary:
    root: str
    scanned: int = 0
    eligible: int = 0
    changed: int = 0
    sent: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    cancelled: bool = False

    def log_summary(self) -> None:
        if not self.changed and not self.cancelled:
            logger.debug(
                "%s: %d scanned, %d eligible, nothing new",
                self.root,
                self.scanned,
                self.eligible,
            )
            return
        logger.info(
            "%s: %d scanned, %d eligible, %d changed, %d sent, %d failed%s",
            self.root,
            self.scanned,
            self.eligible,
            self.changed,
            len(self.sent),
            len(self.failed),
            " (cancelled)" if self.cancelled else "",
        )


class SyncService:
    """Owns the pollers and relays changed files to one chat.

    The snapshot store and watch registry may be shared with other services;
    by default each service creates its own.
    """

    def __init__(
        self,
        uploader: Uploader,
        chat_id: str,
        filter_policy: Optional[FilterPolicy] = None,
        store: Optional[SnapshotStore] = None,
        registry: Optional[WatchRegistry] = None,
        retry_failed: bool = True,
    ):
        self.uploader = uploader
        self.chat_id = chat_id
        self.filter_policy = filter_policy or FilterPolicy()
        self.store = store if store is not None else SnapshotStore()
        self.registry = registry if registry is not None else WatchRegistry()
        self.retry_failed = retry_failed
        self._stop_event = threading.Event()
        self._pollers: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _ensure_running(self) -> None:
        if self._stop_event.is_set():
            raise SyncError("Sync service has been stopped")

    # -- dispatch -------------------------------------------------------------

    def sync_file(self, path: str) -> Any:
        """Send *path* as the attachment kind matching its extension."""

        if not path:
            raise DispatchError("File path cannot be empty", retryable=False)
        category = classify(path)
        try:
            send = getattr(self.uploader, f"send_{category.value}")
            return send(self.chat_id, path, caption_for(path))
        except Exception as exc:
            raise DispatchError(
                f"Failed to send {category.value} {path}: {exc}",
                path=path,
                category=category,
                retryable=getattr(exc, 'retryable', True),
            ) from exc

    # -- registration ---------------------------------------------------------

    def register_directory(self, path: str) -> bool:
        return self.registry.register(path)

    # -- cycles ---------------------------------------------------------------

    def _run_cycle(self, root: str, show_progress: bool = False) -> CycleSummary:
        summary = CycleSummary(root=root)
        if self._stop_event.is_set():
            summary.cancelled = True
            return summary

        paths = scan_directory(root)
        summary.scanned = len(paths)
        eligible = self.filter_policy.filter(paths)
        summary.eligible = len(eligible)

        if self._stop_event.is_set():
            summary.cancelled = True
            return summary

        # Without retries the snapshot is updated before delivery is attempted.
        pending = self.store.changes(eligible, commit=not self.retry_failed)
        summary.changed = len(pending)

        done = 0
        progress = tqdm(total=len(pending), unit="file", disable=not show_progress)
        try:
            for observation in pending:
                if self._stop_event.is_set():
                    summary.cancelled = True
                    break
                self._dispatch(observation, summary)
                done += 1
                progress.update(1)
        finally:
            progress.close()
            if self.retry_failed:
                # Whatever was not dispatched must be reportable next cycle.
                for leftover in pending[done:]:
                    self.store.release(leftover.path)
        return summary

    def _dispatch(self, observation: Observation, summary: CycleSummary) -> None:
        path = observation.path
        try:
            receipt = self.sync_file(path)
        except DispatchError as exc:
            logger.error("Error syncing file %s: %s", path, exc.__cause__ or exc)
            summary.failed.append((path, str(exc)))
            if self.retry_failed:
                if exc.retryable:
                    self.store.release(path)
                else:
                    logger.warning("Not retrying %s until it changes again", path)
                    self.store.commit(observation)
            return
        if self.retry_failed:
            self.store.commit(observation)
        summary.sent.append(path)
        logger.info(
            "Sent %s%s",
            path,
            f" (message {receipt.message_id})" if getattr(receipt, 'message_id', None) else "",
        )

    def sync_once(self, path: str, show_progress: bool = False) -> CycleSummary:
        """Register *path* and run one synchronous poll cycle over it."""

        self._ensure_running()
        self.register_directory(path)
        summary = self._run_cycle(_expand_path(path), show_progress=show_progress)
        summary.log_summary()
        return summary

    # -- continuous sync ------------------------------------------------------

    def start_continuous_sync(self, path: str, interval: float = DEFAULT_INTERVAL) -> None:
        """Start a poller thread for *path* firing every *interval* seconds."""

        self._ensure_running()
        if interval is None or interval <= 0:
            interval = DEFAULT_INTERVAL
        self.register_directory(path)
        root = _expand_path(path)

        with self._lock:
            self._ensure_running()
            existing = self._pollers.get(root)
            if existing is not None and existing.is_alive():
                logger.info("Continuous sync for %s is already running", root)
                return
            thread = threading.Thread(
                target=self._poll_loop,
                args=(root, interval),
                name=f"poller:{root}",
                daemon=True,
            )
            self._pollers[root] = thread
            thread.start()
        logger.debug("Started poller for %s every %.2fs", root, interval)

    def _poll_cycle(self, root: str, initial: bool = False) -> None:
        try:
            summary = self._run_cycle(root)
        except ScanError as exc:
            if initial:
                logger.error("Error in initial sync for %s: %s", root, exc)
            else:
                logger.error("Error syncing directory %s: %s", root, exc)
            return
        except Exception as exc:  # pragma: no cover
            logger.exception("Unexpected error syncing %s: %s", root, exc)
            return
        summary.log_summary()

    def _poll_loop(self, root: str, interval: float) -> None:
        try:
            self._poll_cycle(root, initial=True)
            next_tick = time.monotonic() + interval
            while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
                self._poll_cycle(root)
                next_tick += interval
                now = time.monotonic()
                if next_tick <= now:
                    # Drop the ticks a slow cycle ran over instead of bursting.
                    skipped = int((now - next_tick) // interval) + 1
                    logger.debug("Cycle for %s overran; skipping %d tick(s)", root, skipped)
                    next_tick += skipped * interval
        finally:
            logger.info("Stopping continuous sync for %s", root)

    def running(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(root for root, thread in self._pollers.items() if thread.is_alive())

    def stop(self) -> None:
        """Signal every poller to finish and wait until all of them exited."""

        with self._lock:
            self._stop_event.set()
            threads = list(self._pollers.values())
        for thread in threads:
            thread.join()

