"""Sync engine for one watch pair.

The engine moves through ``idle -> initial_sync -> steady`` and ends in
``stopped`` (or ``failed`` on a startup error). The initial sync compares
the whole local tree and, for ``down``/``both`` pairs, the remote listing
against the persisted state. In steady state local filesystem events are
debounced per path and the remote is polled every ``check_interval_secs``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import ConflictSettings, SyncSettings, get_config_dir
from ..exceptions import ConfigError, RemoteError
from ..utils import utc_now_iso
from .conflict import ConflictResolver
from .detector import ChangeDetector
from .ignore import PathMatcher
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeOrigin,
    ConflictCase,
    FileState,
    SyncConfig,
    TransferKind,
    TransferOutcome,
    TransferTask,
)
from .modes import SyncDirection
from .operations import SyncOperations
from .remote import RemoteStore
from .scheduler import RetryPolicy, TransferScheduler
from .state import StateStore
from .watcher import Debouncer, LocalWatcher

logger = logging.getLogger(__name__)

# Upper bound for one wait of the steady loop, so operator resolutions
# written by another process are picked up promptly
MAX_IDLE_WAIT = 2.0

_STAT_KEYS = {
    TransferKind.UPLOAD: "uploads",
    TransferKind.DOWNLOAD: "downloads",
    TransferKind.DELETE_LOCAL: "deletes_local",
    TransferKind.DELETE_REMOTE: "deletes_remote",
}


class EngineState(str, Enum):
    """Lifecycle states of a sync engine."""

    IDLE = "idle"
    INITIAL_SYNC = "initial_sync"
    STEADY = "steady"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class EngineStatus:
    """Snapshot of an engine published to the multiplexer."""

    local_path: str
    remote_path: str
    direction: str
    state: EngineState
    in_flight: int = 0
    queued: int = 0
    conflicts: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    last_sync: Optional[str] = None
    last_scan: Optional[str] = None
    message: Optional[str] = None
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "direction": self.direction,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "queued": self.queued,
            "conflicts": list(self.conflicts),
            "errors": dict(self.errors),
            "last_sync": self.last_sync,
            "last_scan": self.last_scan,
            "message": self.message,
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EngineStatus":
        return cls(
            local_path=data.get("local_path", ""),
            remote_path=data.get("remote_path", ""),
            direction=data.get("direction", ""),
            state=EngineState(data.get("state", "idle")),
            in_flight=int(data.get("in_flight", 0)),
            queued=int(data.get("queued", 0)),
            conflicts=list(data.get("conflicts", [])),
            errors=dict(data.get("errors", {})),
            last_sync=data.get("last_sync"),
            last_scan=data.get("last_scan"),
            message=data.get("message"),
            stats=dict(data.get("stats", {})),
        )


@dataclass
class PassReport:
    """What one detection pass found and scheduled."""

    local_events: int = 0
    remote_events: int = 0
    uploads: int = 0
    downloads: int = 0
    deletes_local: int = 0
    deletes_remote: int = 0
    conflicts: int = 0
    """Conflicts detected in this pass"""

    unresolved: int = 0
    """Conflicts left for an operator"""

    converged: int = 0
    """Paths that needed a state update only"""

    resolved: int = 0
    """Operator decisions applied"""

    deferred: list[str] = field(default_factory=list)
    """Paths postponed because a transfer for them was still running"""

    remote_error: Optional[str] = None

    @property
    def scheduled(self) -> int:
        return self.uploads + self.downloads + self.deletes_local + self.deletes_remote

    def count(self, task: TransferTask) -> None:
        key = _STAT_KEYS[task.kind]
        setattr(self, key, getattr(self, key) + 1)


StatusSink = Callable[[EngineStatus], None]


class SyncEngine:
    """Keeps one watch pair in sync."""

    def __init__(
        self,
        config: SyncConfig,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        conflict: Optional[ConflictSettings] = None,
        state_dir: Optional[Path] = None,
        status_sink: Optional[StatusSink] = None,
    ):
        """Initialize the engine.

        Args:
            config: Watch pair configuration
            remote: Remote store holding the remote side
            settings: Global sync settings
            conflict: Conflict settings (used for ``both`` pairs)
            state_dir: Directory of the state files, defaults to
                ``<config dir>/state``
            status_sink: Called with an :class:`EngineStatus` whenever the
                engine state changes
        """
        self.config = config
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.conflict_settings = conflict or ConflictSettings()
        self.state_dir = state_dir or (get_config_dir() / "state")
        self.status_sink = status_sink

        self.store = StateStore(config.local_path, config.remote_path, self.state_dir)
        self.resolver = ConflictResolver(
            self.conflict_settings.resolution, backup=self.conflict_settings.backup
        )
        self.operations = SyncOperations(
            config,
            remote,
            chunk_size=self.settings.chunk_size,
            use_trash=self.settings.use_local_trash,
        )
        self.debouncer = Debouncer(self.settings.debounce_secs)

        self.matcher: Optional[PathMatcher] = None
        self.detector: Optional[ChangeDetector] = None
        self.scheduler: Optional[TransferScheduler] = None
        self.watcher: Optional[LocalWatcher] = None
        self.last_report: Optional[PassReport] = None

        self._state = EngineState.IDLE
        self._message: Optional[str] = None
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._totals_lock = threading.Lock()
        self._totals = {
            "uploads": 0,
            "downloads": 0,
            "deletes_local": 0,
            "deletes_remote": 0,
            "conflicts": 0,
            "failed": 0,
        }

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def direction(self) -> SyncDirection:
        return self.config.direction

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Validate the watch pair, load its state and build the components.

        Raises:
            ConfigError: If the local directory is unusable
            StateCorrupt: If the persisted state cannot be parsed
        """
        if self.scheduler is not None:
            return

        try:
            local = self.config.local_path
            if not local.exists() and self.direction is SyncDirection.DOWN:
                logger.info(f"Creating local directory {local}")
                local.mkdir(parents=True, exist_ok=True)
            if not local.exists():
                raise ConfigError(f"Local directory does not exist: {local}")
            if not local.is_dir():
                raise ConfigError(f"Local path is not a directory: {local}")

            self.store.load()
        except Exception as e:
            self._set_state(EngineState.FAILED, str(e))
            raise

        self.matcher = PathMatcher.for_root(
            self.config.local_path, self.config.ignore_patterns
        )
        self.detector = ChangeDetector(
            self.matcher, self.remote, chunk_size=self.settings.chunk_size
        )
        self.scheduler = TransferScheduler(
            self.operations.execute,
            self._on_complete,
            self._on_failure,
            max_workers=self.settings.concurrent_uploads,
            retry=RetryPolicy(
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
            ),
            name=f"fileswatch-{self.store.key}",
        )
        logger.debug(
            f"Engine ready: {self.config.local_path} <-> {self.config.remote_path} "
            f"({self.direction.value}, {len(self.store.paths())} known files)"
        )

    def _components(self) -> tuple[ChangeDetector, TransferScheduler]:
        if self.detector is None or self.scheduler is None:
            raise RuntimeError(
                f"Sync engine for {self.config.local_path} is not started"
            )
        return self.detector, self.scheduler

    def initial_sync(self, full: bool = False) -> PassReport:
        """Reconcile the whole tree against the persisted state.

        Args:
            full: Re-hash every file instead of trusting size and mtime
        """
        self.start()
        self._set_state(EngineState.INITIAL_SYNC)
        logger.info(
            f"Initial sync of {self.config.local_path} <-> {self.config.remote_path}"
        )
        return self.run_pass(local_paths=None, poll_remote=True, full=full)

    def sync_once(self, full: bool = False) -> dict[str, int]:
        """Run one complete sync and wait for all transfers.

        Returns:
            Statistics: uploads, downloads, deletes_local, deletes_remote,
            conflicts and failed transfers
        """
        try:
            report = self.initial_sync(full=full)
            _detector, scheduler = self._components()
            scheduler.wait_idle()
            if report.remote_error:
                logger.warning(f"Remote side was not scanned: {report.remote_error}")
        finally:
            self._shutdown()
            if self._state is not EngineState.FAILED:
                self._set_state(EngineState.STOPPED)

        stats = self.totals()
        stats["unresolved"] = len(self.store.conflicts())
        return stats

    def run(self) -> None:
        """Run until :meth:`stop` is called.

        Raises:
            ConfigError, StateCorrupt: If the engine cannot start
        """
        try:
            self.initial_sync()
            if self._stop_event.is_set():
                return
            self._set_state(EngineState.STEADY)

            if self.direction.scans_local and self.matcher is not None:
                self.watcher = LocalWatcher(
                    self.config.local_path, self.matcher, self._on_local_change
                )
                self.watcher.start()

            self._steady_loop()
        except Exception as e:
            logger.error(f"Sync engine for {self.config.local_path} failed: {e}")
            self._set_state(EngineState.FAILED, str(e))
            raise
        finally:
            if self.watcher is not None:
                self.watcher.stop()
                self.watcher = None
            self._shutdown()
            if self._state is not EngineState.FAILED:
                self._set_state(EngineState.STOPPED)

    def _steady_loop(self) -> None:
        poll_interval = self.config.poll_interval
        next_poll: Optional[float] = None
        if self.direction.scans_remote:
            next_poll = time.monotonic() + poll_interval

        while not self._stop_event.is_set():
            due = self.debouncer.due()
            if due:
                logger.debug(f"Processing {len(due)} changed path(s)")
                self.run_pass(local_paths=due, poll_remote=self.direction.scans_remote)
                if self.direction.scans_remote:
                    next_poll = time.monotonic() + poll_interval
            elif next_poll is not None and time.monotonic() >= next_poll:
                logger.debug("Polling remote for changes")
                self.run_pass(local_paths=[], poll_remote=True)
                next_poll = time.monotonic() + poll_interval
            elif self.store.has_resolution_requests():
                self.run_pass(local_paths=[], poll_remote=False)

            self._wake.wait(self._wait_timeout(next_poll))
            self._wake.clear()

    def _wait_timeout(self, next_poll: Optional[float]) -> float:
        now = time.monotonic()
        timeout = MAX_IDLE_WAIT
        deadline = self.debouncer.next_deadline()
        if deadline is not None:
            timeout = min(timeout, deadline - now)
        if next_poll is not None:
            timeout = min(timeout, next_poll - now)
        return max(timeout, 0.0)

    def stop(self) -> None:
        """Ask the engine to stop; :meth:`run` returns after shutting down."""
        self._stop_event.set()
        self._wake.set()

    def _shutdown(self) -> None:
        if self.scheduler is None:
            return
        abandoned = self.scheduler.shutdown(self.settings.shutdown_grace_secs)
        if abandoned:
            logger.warning(
                f"{abandoned} transfer(s) of {self.config.local_path} were "
                "abandoned and will be reconciled on next start"
            )
        with self.store.lock:
            self.store.flush()

    def _on_local_change(self, relative_path: str) -> None:
        self.debouncer.touch(relative_path)
        self._wake.set()

    # ------------------------------------------------------------------
    # Detection and planning
    # ------------------------------------------------------------------

    def run_pass(
        self,
        local_paths: Optional[list[str]] = None,
        poll_remote: bool = True,
        full: bool = False,
    ) -> PassReport:
        """Detect changes and schedule the transfers they require.

        Args:
            local_paths: Relative paths to check locally; None checks the
                whole tree, an empty list skips the local side
            poll_remote: List the remote (``down``/``both`` pairs only)
            full: Re-hash every file

        Returns:
            PassReport of this pass
        """
        self.start()
        detector, scheduler = self._components()
        report = PassReport()

        self._apply_resolution_requests(report)

        busy = scheduler.active_paths()

        remote_events: list[ChangeEvent] = []
        if self.direction.scans_remote and poll_remote:
            try:
                remote_events = detector.scan_remote(
                    self.config, self.store, full=full
                )
            except RemoteError as e:
                report.remote_error = str(e)
                logger.warning(f"Could not list {self.config.remote_path}: {e}")
                if self.direction.resolves_conflicts and local_paths:
                    # Uploading without seeing the remote could overwrite edits
                    for path in local_paths:
                        self.debouncer.touch(path, self.config.poll_interval)
                    report.deferred.extend(local_paths)
                    self._finish_pass(report, full_scan=False)
                    return report
                if self.direction.resolves_conflicts and local_paths is None:
                    self._finish_pass(report, full_scan=False)
                    return report

        local_events: list[ChangeEvent] = []
        if self.direction.scans_local:
            scope = local_paths
            if scope is not None and remote_events:
                # Remote changes must be checked against the local copy
                scope = sorted(set(scope) | {e.path for e in remote_events})
            if scope is None or scope:
                local_events = detector.scan_local(
                    self.config, self.store, paths=scope, full=full
                )

        report.local_events = len(local_events)
        report.remote_events = len(remote_events)

        local_by_path = {e.path: e for e in local_events}
        remote_by_path = {e.path: e for e in remote_events}

        for path in sorted(set(local_by_path) | set(remote_by_path)):
            if path in busy or scheduler.is_busy(path):
                self.debouncer.touch(path)
                report.deferred.append(path)
                continue

            local_event = local_by_path.get(path)
            remote_event = remote_by_path.get(path)

            pending = self.store.get_conflict(path)
            if pending is not None:
                self._update_pending_conflict(pending, local_event, remote_event)
                report.unresolved += 1
                continue

            for task in self._plan(path, local_event, remote_event, report):
                if scheduler.enqueue(task):
                    report.count(task)

        self._finish_pass(report, full_scan=local_paths is None)
        return report

    def _finish_pass(self, report: PassReport, full_scan: bool) -> None:
        self.last_report = report
        with self.store.lock:
            if full_scan:
                self.store.mark_scanned()
            self.store.flush()
        if report.scheduled or report.conflicts:
            logger.info(
                f"{self.config.local_path}: {report.uploads} upload(s), "
                f"{report.downloads} download(s), "
                f"{report.deletes_local + report.deletes_remote} deletion(s), "
                f"{report.conflicts} conflict(s)"
            )
        self._publish()

    def _plan(
        self,
        path: str,
        local: Optional[ChangeEvent],
        remote: Optional[ChangeEvent],
        report: PassReport,
    ) -> list[TransferTask]:
        """Turn the events of one path into transfer tasks."""
        direction = self.direction

        if remote is None:
            if local is None or not direction.allows_upload:
                return []
            if local.kind is ChangeKind.DELETED:
                reason = "deleted locally"
                return [TransferTask(path, TransferKind.DELETE_REMOTE, reason=reason)]
            reason = f"{local.kind.value} locally"
            return [TransferTask(path, TransferKind.UPLOAD, reason=reason)]

        if local is None:
            if not direction.allows_download:
                return []
            if remote.kind is ChangeKind.DELETED:
                reason = "deleted remotely"
                return [TransferTask(path, TransferKind.DELETE_LOCAL, reason=reason)]
            reason = f"{remote.kind.value} remotely"
            return [TransferTask(path, TransferKind.DOWNLOAD, reason=reason)]

        local_deleted = local.kind is ChangeKind.DELETED
        remote_deleted = remote.kind is ChangeKind.DELETED

        if local_deleted and remote_deleted:
            logger.debug(f"Deleted on both sides: {path}")
            self.store.remove(path)
            self.store.clear_error(path)
            report.converged += 1
            return []

        # An edit beats a deletion on the other side
        if local_deleted:
            reason = "edited remotely, deleted locally"
            return [TransferTask(path, TransferKind.DOWNLOAD, reason=reason)]
        if remote_deleted:
            reason = "edited locally, deleted remotely"
            return [TransferTask(path, TransferKind.UPLOAD, reason=reason)]

        if local.observed is None or remote.observed is None:
            raise RuntimeError(f"Change of {path} has no observed snapshot")
        local_hash = local.observed.content_hash
        remote_hash = remote.observed.content_hash
        if local_hash and remote_hash and local_hash == remote_hash:
            logger.debug(f"Both sides hold the same content: {path}")
            previous = self.store.get(path)
            self.store.upsert(
                path,
                FileState(
                    relative_path=path,
                    size=local.observed.size,
                    modified_time=local.observed.modified_time or 0.0,
                    content_hash=local_hash,
                    last_sync_time=utc_now_iso(),
                    last_direction_synced=(
                        previous.last_direction_synced if previous else "up"
                    ),
                    remote_revision=remote.observed.revision,
                    remote_modified_time=remote.observed.modified_time,
                ),
            )
            report.converged += 1
            return []

        case = self.resolver.resolve(
            self.resolver.new_case(path, local.observed, remote.observed)
        )
        report.conflicts += 1
        with self._totals_lock:
            self._totals["conflicts"] += 1

        if not case.is_resolved:
            self.store.add_conflict(case)
            report.unresolved += 1
            return []
        return self.resolver.tasks_for(case)

    def _update_pending_conflict(
        self,
        case: ConflictCase,
        local: Optional[ChangeEvent],
        remote: Optional[ChangeEvent],
    ) -> None:
        """Refresh the snapshots of a conflict waiting for an operator."""
        updated = case
        if local is not None and local.observed is not None:
            updated = replace(updated, local=local.observed)
        if remote is not None and remote.observed is not None:
            updated = replace(updated, remote=remote.observed)
        if updated is not case:
            self.store.add_conflict(updated)

    def _apply_resolution_requests(self, report: PassReport) -> None:
        _detector, scheduler = self._components()
        for path, choice in self.store.take_resolution_requests().items():
            case = self.store.pop_conflict(path)
            if case is None:
                logger.warning(f"No pending conflict for {path}, ignoring resolution")
                continue
            case = self.resolver.choose(case, choice)
            for task in self.resolver.tasks_for(case):
                if scheduler.enqueue(task):
                    report.count(task)
            report.resolved += 1

    def request_resolution(
        self, path: str, choice: Union[ChangeOrigin, str]
    ) -> None:
        """Resolve a pending manual conflict by keeping one side.

        Args:
            path: Relative path of the conflict
            choice: "local" or "remote"

        Raises:
            ValueError: If the choice is invalid
            KeyError: If the path has no pending conflict
        """
        choice = ChangeOrigin(choice)
        if self.store.get_conflict(path) is None:
            raise KeyError(path)
        self.store.request_resolution(path, choice)
        self._wake.set()

    # ------------------------------------------------------------------
    # Transfer results
    # ------------------------------------------------------------------

    def _on_complete(self, task: TransferTask, outcome: TransferOutcome) -> None:
        with self.store.lock:
            if outcome.removed:
                self.store.remove(task.path)
            elif outcome.state is not None:
                self.store.upsert(task.path, outcome.state)
            else:
                return
            self.store.clear_error(task.path)
            self.store.flush()

        with self._totals_lock:
            self._totals[_STAT_KEYS[task.kind]] += 1
        logger.debug(f"{task.kind.value} {task.path} done ({task.reason})")
        self._publish()

    def _on_failure(self, task: TransferTask, error: BaseException) -> None:
        with self.store.lock:
            self.store.set_error(task.path, f"{task.kind.value}: {error}")
            self.store.flush()
        with self._totals_lock:
            self._totals["failed"] += 1
        self._publish()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def totals(self) -> dict[str, int]:
        with self._totals_lock:
            return dict(self._totals)

    def status(self) -> EngineStatus:
        scheduler_stats = self.scheduler.stats() if self.scheduler else {}
        state = self.store.state
        return EngineStatus(
            local_path=str(self.config.local_path),
            remote_path=self.config.remote_path,
            direction=self.direction.value,
            state=self._state,
            in_flight=scheduler_stats.get("in_flight", 0),
            queued=scheduler_stats.get("queued", 0),
            conflicts=[c.path for c in self.store.conflicts()],
            errors=self.store.errors(),
            last_sync=state.last_sync,
            last_scan=state.last_scan,
            message=self._message,
            stats=self.totals(),
        )

    def _set_state(self, state: EngineState, message: Optional[str] = None) -> None:
        if state is not self._state:
            logger.debug(
                f"{self.config.local_path}: {self._state.value} -> {state.value}"
            )
        self._state = state
        self._message = message
        self._publish()

    def _publish(self) -> None:
        if self.status_sink is None:
            return
        try:
            self.status_sink(self.status())
        except Exception:
            logger.exception("Status sink failed")
