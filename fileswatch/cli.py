"""CLI interface for files-watch."""

import logging
import signal
import threading
from pathlib import Path
from typing import Any, Optional

import click

from .api import FilesClient
from .config import API_KEY_ENV, API_URL_ENV, Config, WatchConfig, get_config_dir
from .exceptions import ConfigError, FilesWatchError, StateCorrupt
from .output import OutputFormatter
from .sync.engine import EngineState, SyncEngine
from .sync.models import ChangeOrigin, SyncConfig
from .sync.multiplexer import STATUS_FILE_NAME, WatchMultiplexer, read_status_file
from .sync.state import StateStore
from .utils import format_timestamp

logger = logging.getLogger(__name__)

DIRECTIONS = click.Choice(["up", "down", "both"], case_sensitive=False)

# How often ``start`` refreshes the daemon status snapshot
STATUS_INTERVAL = 1.0


def _config_dir(ctx: Any) -> Path:
    return ctx.obj["config_dir"]


def _state_dir(ctx: Any) -> Path:
    return _config_dir(ctx) / "state"


def _load_config(ctx: Any, out: OutputFormatter) -> Config:
    try:
        return Config.load(Config.default_path(_config_dir(ctx)))
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        raise  # Unreachable, but helps type checker


def _require_watch(
    ctx: click.Context, out: OutputFormatter, config: Config, local_path: str
) -> WatchConfig:
    given = Path(local_path).expanduser()
    watch = config.find_watch(str(given.absolute())) or config.find_watch(
        str(given.resolve())
    )
    if watch is None:
        out.error(f"No watch configuration found for: {local_path}")
        ctx.exit(1)
    return watch


def _sync_config(
    ctx: Any, out: OutputFormatter, config: Config, watch: WatchConfig
) -> SyncConfig:
    try:
        return watch.to_sync_config(config.sync)
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        raise


def _make_client(ctx: Any, out: OutputFormatter) -> FilesClient:
    try:
        return FilesClient(api_key=ctx.obj["api_key"], api_url=ctx.obj["api_url"])
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        raise


@click.group()
@click.option("--api-key", "-k", envvar=API_KEY_ENV, help="Files.com API key")
@click.option("--api-url", envvar=API_URL_ENV, help="Files.com API base URL")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Configuration directory (default: ~/.config/fileswatch)",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="fileswatch")
@click.pass_context
def main(
    ctx: Any,
    api_key: Optional[str],
    api_url: Optional[str],
    config_dir: Optional[Path],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """files-watch - Keep local directories in sync with Files.com."""
    ctx.ensure_object(dict)
    ctx.obj["api_key"] = api_key
    ctx.obj["api_url"] = api_url
    ctx.obj["config_dir"] = config_dir or get_config_dir()
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("fileswatch").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument(
    "local_path", type=click.Path(exists=True, file_okay=False, resolve_path=True)
)
@click.option("--remote", "-r", required=True, help="Remote folder on Files.com")
@click.option(
    "--direction", "-d", type=DIRECTIONS, default="up", help="Sync direction"
)
@click.option(
    "--ignore",
    "-i",
    multiple=True,
    help="Pattern to ignore (gitignore syntax, can be repeated)",
)
@click.pass_context
def init(
    ctx: Any, local_path: str, remote: str, direction: str, ignore: tuple[str, ...]
) -> None:
    """Add a watch pair for LOCAL_PATH.

    Examples:
        files-watch init ~/Documents -r /backup/documents
        files-watch init ./site -r /www -d both -i "*.tmp" -i "build/"
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)

    watch = WatchConfig(
        local_path=local_path,
        remote_path=remote,
        direction=direction.lower(),
        ignore_patterns=list(ignore),
    )
    sync_config = _sync_config(ctx, out, config, watch)
    watch.remote_path = sync_config.remote_path

    try:
        config.add_watch(watch)
        path = config.save()
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(watch.to_dict())
        return

    out.success("Initialized sync configuration")
    out.info(f"  Local:     {watch.local_path}")
    out.info(f"  Remote:    {watch.remote_path}")
    out.info(f"  Direction: {watch.direction}")
    if watch.ignore_patterns:
        out.info(f"  Ignoring:  {', '.join(watch.ignore_patterns)}")
    out.info(f"  Config:    {path}")


@main.command("list")
@click.pass_context
def list_watches(ctx: Any) -> None:
    """List the configured watch pairs."""
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)

    if not config.watch:
        if out.json_output:
            out.output_json([])
            return
        out.warning("No watch configurations found")
        out.info("Run 'files-watch init' to create one")
        return

    rows = [
        {
            "local_path": w.local_path,
            "remote_path": w.remote_path,
            "direction": w.direction,
            "ignore_patterns": ", ".join(w.ignore_patterns),
        }
        for w in config.watch
    ]
    if out.json_output:
        out.output_json([w.to_dict() for w in config.watch])
        return
    out.output_table(
        rows,
        ["local_path", "remote_path", "direction", "ignore_patterns"],
        {
            "local_path": "Local",
            "remote_path": "Remote",
            "direction": "Direction",
            "ignore_patterns": "Ignore",
        },
        title="Configured Watches",
    )


@main.command()
@click.argument("local_path", type=click.Path())
@click.option(
    "--keep-state", is_flag=True, help="Keep the sync state file of the pair"
)
@click.pass_context
def remove(ctx: Any, local_path: str, keep_state: bool) -> None:
    """Remove the watch pair of LOCAL_PATH."""
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)
    watch = _require_watch(ctx, out, config, local_path)

    try:
        config.remove_watch(watch.local_path)
        config.save()
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    state_removed = False
    if not keep_state:
        try:
            sync_config = watch.to_sync_config(config.sync)
        except ConfigError as e:
            logger.debug(f"Not clearing state of invalid pair: {e}")
        else:
            store = StateStore(
                sync_config.local_path, sync_config.remote_path, _state_dir(ctx)
            )
            state_removed = store.clear()

    if out.json_output:
        out.output_json({"removed": watch.to_dict(), "state_removed": state_removed})
        return
    out.success(f"Removed watch pair {watch.local_path} <-> {watch.remote_path}")
    if state_removed:
        out.info("Sync state cleared")


@main.command()
@click.argument("local_path", type=click.Path())
@click.option(
    "--direction",
    "-d",
    type=DIRECTIONS,
    default=None,
    help="Override the configured sync direction",
)
@click.option("--full", "-f", is_flag=True, help="Re-hash every file")
@click.pass_context
def sync(ctx: Any, local_path: str, direction: Optional[str], full: bool) -> None:
    """Run one sync of LOCAL_PATH without watching.

    Waits for all transfers to finish. Failed transfers and conflicts that
    need a decision are reported as warnings.

    Examples:
        files-watch sync ~/Documents
        files-watch sync ./site --direction down --full
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)
    watch = _require_watch(ctx, out, config, local_path)
    if direction is not None:
        watch = WatchConfig(
            local_path=watch.local_path,
            remote_path=watch.remote_path,
            direction=direction.lower(),
            ignore_patterns=list(watch.ignore_patterns),
        )
    sync_config = _sync_config(ctx, out, config, watch)
    client = _make_client(ctx, out)

    out.info(f"{'Full' if full else 'Incremental'} sync")
    out.info(f"  Local:     {sync_config.local_path}")
    out.info(f"  Remote:    {sync_config.remote_path}")
    out.info(f"  Direction: {sync_config.direction.value}")

    engine = SyncEngine(
        sync_config,
        client,
        settings=config.sync,
        conflict=config.conflict,
        state_dir=_state_dir(ctx),
    )
    exit_code = 0
    stats: dict[str, Any] = {}
    try:
        stats = dict(engine.sync_once(full=full))
    except KeyboardInterrupt:
        out.warning("Sync cancelled by user")
        exit_code = 130
    except FilesWatchError as e:
        out.error(str(e))
        exit_code = 1
    finally:
        client.close()
    if exit_code:
        ctx.exit(exit_code)

    remote_error = engine.last_report.remote_error if engine.last_report else None
    errors = engine.store.errors()
    conflicts = [c.path for c in engine.store.conflicts()]

    if out.json_output:
        stats["remote_error"] = remote_error
        stats["errors"] = errors
        stats["conflict_paths"] = conflicts
        out.output_json(stats)
        return

    out.success(
        f"{stats['uploads']} uploaded, {stats['downloads']} downloaded, "
        f"{stats['deletes_local'] + stats['deletes_remote']} deleted"
    )
    if remote_error:
        out.warning(f"Remote side was not checked: {remote_error}")
    for path, message in sorted(errors.items()):
        out.warning(f"{path}: {message}")
    if conflicts:
        out.warning(
            f"{len(conflicts)} conflict(s) need a decision: {', '.join(conflicts)}. "
            "Use 'files-watch resolve'."
        )


@main.command()
@click.argument("path", type=click.Path(), required=False)
@click.option(
    "--daemon",
    "-d",
    is_flag=True,
    help="Run every configured pair without console output until stopped",
)
@click.pass_context
def start(ctx: Any, path: Optional[str], daemon: bool) -> None:
    """Watch and sync until interrupted.

    Runs every configured watch pair, or only the pair of PATH. The state of
    the running pairs is written to daemon-status.json in the configuration
    directory, where 'files-watch status' picks it up.
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)

    if daemon and path:
        out.error("PATH cannot be combined with --daemon")
        ctx.exit(1)
    if not config.watch:
        out.error("No watch configurations found. Run 'files-watch init' first.")
        ctx.exit(1)

    watches = config.watch
    if path:
        watches = [_require_watch(ctx, out, config, path)]
    run_config = Config(
        watch=list(watches), sync=config.sync, conflict=config.conflict
    )
    client = _make_client(ctx, out)

    multiplexer = WatchMultiplexer(run_config, client, state_dir=_state_dir(ctx))
    status_file = _config_dir(ctx) / STATUS_FILE_NAME
    stop = threading.Event()

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, lambda *_: stop.set())

    if not daemon:
        out.info("Starting files-watch (Ctrl+C to stop)...")
    try:
        for status in multiplexer.start():
            if not daemon:
                out.info(
                    f"  {status.local_path} <-> {status.remote_path} "
                    f"({status.direction})"
                )
        while multiplexer.running and not stop.wait(STATUS_INTERVAL):
            multiplexer.write_status(status_file)
    except KeyboardInterrupt:
        if not daemon:
            out.info("Stopping...")
    finally:
        statuses = multiplexer.shutdown()
        try:
            multiplexer.write_status(status_file)
        except OSError as e:
            logger.warning(f"Could not write {status_file}: {e}")
        client.close()
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    failed = [s for s in statuses if s.state is EngineState.FAILED]
    for status in failed:
        out.error(f"{status.local_path}: {status.message}")
    if out.json_output:
        out.output_json([s.to_dict() for s in statuses])
    if failed:
        ctx.exit(1)


@main.command()
@click.argument("path", type=click.Path(), required=False)
@click.pass_context
def status(ctx: Any, path: Optional[str]) -> None:
    """Show the sync status of all watch pairs, or of the pair of PATH.

    Live transfer counts are shown while 'files-watch start' is running.
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)

    watches = config.watch
    if path:
        watches = [_require_watch(ctx, out, config, path)]
    if not watches:
        if out.json_output:
            out.output_json([])
            return
        out.warning("No watch configurations found")
        return

    live = read_status_file(_config_dir(ctx) / STATUS_FILE_NAME) or {}
    rows: list[dict[str, Any]] = []
    broken = False

    for watch in watches:
        row: dict[str, Any] = {
            "local_path": watch.local_path,
            "remote_path": watch.remote_path,
            "direction": watch.direction,
            "state": "stopped",
            "files": 0,
            "in_flight": 0,
            "queued": 0,
            "conflicts": [],
            "errors": {},
            "last_sync": None,
            "last_scan": None,
            "message": None,
        }
        rows.append(row)

        try:
            sync_config = watch.to_sync_config(config.sync)
        except ConfigError as e:
            row.update(state="invalid", message=str(e))
            broken = True
            continue

        store = StateStore(
            sync_config.local_path, sync_config.remote_path, _state_dir(ctx)
        )
        try:
            state = store.load()
        except StateCorrupt as e:
            row.update(state="corrupt", message=str(e))
            broken = True
            continue

        row.update(
            local_path=str(sync_config.local_path),
            files=len(state.files),
            conflicts=sorted(state.conflicts),
            errors=dict(state.errors),
            last_sync=state.last_sync,
            last_scan=state.last_scan,
        )
        running = live.get(str(sync_config.local_path))
        if running is not None:
            row.update(
                state=running.state.value,
                in_flight=running.in_flight,
                queued=running.queued,
                message=running.message,
            )

    if out.json_output:
        out.output_json(rows)
    else:
        table_rows = [
            dict(
                r,
                conflicts=len(r["conflicts"]),
                errors=len(r["errors"]),
                last_sync=format_timestamp(r["last_sync"]),
            )
            for r in rows
        ]
        out.output_table(
            table_rows,
            [
                "local_path",
                "remote_path",
                "direction",
                "state",
                "files",
                "in_flight",
                "queued",
                "conflicts",
                "errors",
                "last_sync",
            ],
            {
                "local_path": "Local",
                "remote_path": "Remote",
                "direction": "Direction",
                "state": "State",
                "files": "Files",
                "in_flight": "In flight",
                "queued": "Queued",
                "conflicts": "Conflicts",
                "errors": "Errors",
                "last_sync": "Last sync",
            },
            title="Watch Status",
        )
        for r in rows:
            if r["message"]:
                out.warning(f"{r['local_path']}: {r['message']}")
            for conflict_path in r["conflicts"]:
                out.warning(f"{r['local_path']}: conflict on {conflict_path}")
            for error_path, message in sorted(r["errors"].items()):
                out.warning(f"{r['local_path']}: {error_path}: {message}")

    if broken:
        ctx.exit(1)


@main.command()
@click.argument("local_path", type=click.Path())
@click.argument("path")
@click.option(
    "--keep",
    type=click.Choice(["local", "remote"], case_sensitive=False),
    required=True,
    help="Side whose version wins",
)
@click.pass_context
def resolve(ctx: Any, local_path: str, path: str, keep: str) -> None:
    """Decide a pending conflict on PATH in the watch pair of LOCAL_PATH.

    The decision is applied by the running 'files-watch start', or by the
    next 'files-watch sync' of the pair.

    Examples:
        files-watch resolve ~/Documents notes/todo.txt --keep local
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx, out)
    watch = _require_watch(ctx, out, config, local_path)
    sync_config = _sync_config(ctx, out, config, watch)

    store = StateStore(sync_config.local_path, sync_config.remote_path, _state_dir(ctx))
    try:
        store.load()
    except StateCorrupt as e:
        out.error(str(e))
        ctx.exit(1)

    relative = path.strip("/")
    if store.get_conflict(relative) is None:
        out.error(f"No pending conflict for {relative} in {watch.local_path}")
        ctx.exit(1)

    store.request_resolution(relative, ChangeOrigin(keep.lower()))
    if out.json_output:
        out.output_json({"path": relative, "keep": keep.lower()})
        return
    out.success(f"Keeping the {keep.lower()} version of {relative}")


if __name__ == "__main__":
    main()
