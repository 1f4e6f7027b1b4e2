"""Runs one sync engine per configured watch pair."""

import json
import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import Config, WatchConfig
from ..exceptions import ConfigError, StateCorrupt
from ..utils import utc_now_iso, write_json_atomic
from .engine import EngineState, EngineStatus, StatusSink, SyncEngine
from .models import ChangeOrigin, SyncConfig
from .remote import RemoteStore

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "daemon-status.json"

# Extra time to join an engine thread beyond its transfer grace period
JOIN_SLACK = 5.0

EngineFactory = Callable[[SyncConfig, StatusSink], SyncEngine]


def _pair_key(local_path: Union[str, Path]) -> str:
    return str(Path(local_path).expanduser())


class WatchMultiplexer:
    """Supervises the engines of all watch pairs.

    Each engine runs in its own thread and reports its
    :class:`EngineStatus` through a queue. A pair that fails to start (bad
    configuration, corrupt state, unexpected error) is marked ``failed``
    while the other pairs keep running.
    """

    def __init__(
        self,
        config: Config,
        remote: RemoteStore,
        state_dir: Optional[Path] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        """Initialize the multiplexer.

        Args:
            config: Loaded configuration with the watch pairs
            remote: Remote store shared by all engines
            state_dir: Directory of the per-pair state files
            engine_factory: Builds the engine of a pair (for tests)
        """
        self.config = config
        self.remote = remote
        self.state_dir = state_dir
        self.engine_factory = engine_factory or self._default_factory
        self._status_queue: "queue.Queue[EngineStatus]" = queue.Queue()
        self._statuses: dict[str, EngineStatus] = {}
        self._engines: dict[str, SyncEngine] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._started = False

    def _default_factory(self, sync_config: SyncConfig, sink: StatusSink) -> SyncEngine:
        return SyncEngine(
            sync_config,
            self.remote,
            settings=self.config.sync,
            conflict=self.config.conflict,
            state_dir=self.state_dir,
            status_sink=sink,
        )

    def start(self) -> list[EngineStatus]:
        """Start an engine thread for every watch pair.

        Returns:
            Initial status of all pairs
        """
        if self._started:
            return self.status()
        self._started = True

        if not self.config.watch:
            logger.warning("No watch pairs configured")

        for watch in self.config.watch:
            key = _pair_key(watch.local_path)
            if key in self._engines:
                logger.warning(f"Duplicate watch pair {key}, skipping")
                continue
            try:
                sync_config = watch.to_sync_config(self.config.sync)
            except ConfigError as e:
                logger.error(f"Invalid watch pair {watch.local_path}: {e}")
                self._fail(watch, str(e))
                continue

            engine = self.engine_factory(sync_config, self._status_queue.put)
            self._engines[key] = engine
            self._statuses[key] = engine.status()
            thread = threading.Thread(
                target=self._run_engine,
                args=(key, watch, engine),
                name=f"engine-{sync_config.local_path.name or key}",
                daemon=True,
            )
            self._threads[key] = thread
            thread.start()
            logger.info(
                f"Watching {sync_config.local_path} <-> {sync_config.remote_path} "
                f"({sync_config.direction.value})"
            )

        return self.status()

    def _run_engine(self, key: str, watch: WatchConfig, engine: SyncEngine) -> None:
        try:
            engine.run()
        except (ConfigError, StateCorrupt) as e:
            logger.error(f"Watch pair {key} failed to start: {e}")
            self._fail(watch, str(e), engine)
        except Exception as e:
            logger.exception(f"Watch pair {key} stopped unexpectedly")
            self._fail(watch, f"unexpected error: {e}", engine)

    def _fail(
        self,
        watch: WatchConfig,
        message: str,
        engine: Optional[SyncEngine] = None,
    ) -> None:
        if engine is not None:
            status = engine.status()
            status.state = EngineState.FAILED
            status.message = message
        else:
            status = EngineStatus(
                local_path=_pair_key(watch.local_path),
                remote_path=watch.remote_path,
                direction=watch.direction,
                state=EngineState.FAILED,
                message=message,
            )
        self._status_queue.put(status)

    def _drain(self) -> None:
        while True:
            try:
                status = self._status_queue.get_nowait()
            except queue.Empty:
                return
            self._statuses[_pair_key(status.local_path)] = status

    def status(self) -> list[EngineStatus]:
        """Latest status of every watch pair, in configuration order."""
        self._drain()
        ordered = []
        for watch in self.config.watch:
            status = self._statuses.get(_pair_key(watch.local_path))
            if status is not None:
                ordered.append(status)
        return ordered

    @property
    def running(self) -> bool:
        """Whether any engine thread is still alive."""
        return any(t.is_alive() for t in self._threads.values())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for all engine threads to finish.

        Returns:
            True if no engine is running anymore
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in list(self._threads.values()):
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not self.running

    def engine_for(self, local_path: Union[str, Path]) -> SyncEngine:
        """Engine of a watch pair.

        Raises:
            ConfigError: If the pair is not running
        """
        engine = self._engines.get(_pair_key(local_path))
        if engine is None:
            raise ConfigError(f"No running watch pair for {local_path}")
        return engine

    def resolve(
        self,
        local_path: Union[str, Path],
        path: str,
        choice: Union[ChangeOrigin, str],
    ) -> None:
        """Hand an operator decision for a manual conflict to its engine."""
        self.engine_for(local_path).request_resolution(path, choice)

    def shutdown(self, grace: Optional[float] = None) -> list[EngineStatus]:
        """Stop all engines and wait for them.

        Args:
            grace: Time to wait for each engine, defaults to
                ``shutdown_grace_secs``

        Returns:
            Terminal status of all pairs
        """
        if grace is None:
            grace = self.config.sync.shutdown_grace_secs

        logger.info(f"Stopping {len(self._engines)} watch pair(s)")
        for engine in self._engines.values():
            engine.stop()

        if not self.wait(grace + JOIN_SLACK):
            stuck = [k for k, t in self._threads.items() if t.is_alive()]
            logger.warning(f"Engines still running after shutdown: {', '.join(stuck)}")
        return self.status()

    def write_status(self, path: Path) -> None:
        """Write the status snapshot read by ``files-watch status``."""
        write_json_atomic(
            path,
            {
                "pid": os.getpid(),
                "updated": utc_now_iso(),
                "watches": [s.to_dict() for s in self.status()],
            },
        )


def read_status_file(path: Path) -> Optional[dict[str, EngineStatus]]:
    """Read a daemon status snapshot.

    Returns:
        Status per local path, or None if there is no readable snapshot
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        statuses = [EngineStatus.from_dict(s) for s in data.get("watches", [])]
    except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
        logger.debug(f"Ignoring unreadable status file {path}: {e}")
        return None
    return {_pair_key(s.local_path): s for s in statuses}
