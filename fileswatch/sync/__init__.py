"""Sync engine for files-watch - watch, detect, resolve and transfer."""

from .conflict import ConflictResolver, pick_largest, pick_newest
from .detector import ChangeDetector
from .engine import EngineState, EngineStatus, PassReport, SyncEngine
from .ignore import IGNORE_FILE_NAME, PathMatcher, load_ignore_file
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeOrigin,
    ConflictCase,
    FileSnapshot,
    FileState,
    Resolution,
    SyncConfig,
    TransferKind,
    TransferOutcome,
    TransferTask,
)
from .modes import SyncDirection
from .multiplexer import WatchMultiplexer, read_status_file
from .operations import SyncOperations
from .remote import RemoteStore
from .scheduler import RetryPolicy, TransferScheduler
from .state import StateStore, SyncState, state_key
from .watcher import Debouncer, LocalWatcher

__all__ = [
    "SyncEngine",
    "EngineState",
    "EngineStatus",
    "PassReport",
    "SyncDirection",
    "SyncConfig",
    "SyncOperations",
    "WatchMultiplexer",
    "read_status_file",
    "ChangeDetector",
    "ChangeEvent",
    "ChangeKind",
    "ChangeOrigin",
    "ConflictCase",
    "ConflictResolver",
    "pick_newest",
    "pick_largest",
    "FileSnapshot",
    "FileState",
    "Resolution",
    "TransferKind",
    "TransferOutcome",
    "TransferTask",
    "TransferScheduler",
    "RetryPolicy",
    "RemoteStore",
    "StateStore",
    "SyncState",
    "state_key",
    "IGNORE_FILE_NAME",
    "PathMatcher",
    "load_ignore_file",
    "Debouncer",
    "LocalWatcher",
]
