"""Command line entry point for qbit-mover.

Loads the configuration, sets up logging and the instance lock, then runs the
Engine until SIGINT/SIGTERM. A few utility flags inspect or edit the move
ledgers and exit.
"""
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config_manager import AppConfig, ConfigManager, load_config, update_config
from .core_logic.engine import Engine
from .core_logic.move_ledger import MoveLedger
from .system_manager import LOG_FORMAT, LockFile, setup_logging
from .utils import ConfigError

DEFAULT_CONFIG_PATH = 'config.ini'
TEMPLATE_PATH = Path(__file__).resolve().parent / 'config.ini.template'
LOCK_FILE_NAME = 'qbit_mover.lock'


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='qbit-mover',
        description="Moves completed qBittorrent torrents into per-category directories.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--simple', action='store_true', help='Plain console logging instead of rich output. '
                                                              'Recommended for `screen`, `tmux` or systemd.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    mode_group.add_argument('--once', action='store_true', help='Run a single poll cycle on every server and exit.')
    mode_group.add_argument('--status', action='store_true', help='Show every move ledger record and exit.')
    mode_group.add_argument('--forget', nargs=2, metavar=('SERVER', 'TORRENT_HASH'),
                            help='Delete one record from a server\'s move ledger and exit.')
    return parser


def _setup_console_logging(simple: bool, debug: bool) -> logging.Handler:
    logger = logging.getLogger()
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    if simple:
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    else:
        handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True,
                              markup=False, console=Console(stderr=True))
        handler.setFormatter(logging.Formatter('%(message)s'))
    handler.setLevel(log_level)
    logger.addHandler(handler)
    return handler


def print_status(config: AppConfig, console: Optional[Console] = None) -> int:
    """Prints every ledger record of every configured server. Returns the number of records."""
    console = console or Console()
    table = Table(title="Move ledger", show_lines=False)
    table.add_column("Server", style="cyan", no_wrap=True)
    table.add_column("Hash", no_wrap=True)
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("State", no_wrap=True)
    table.add_column("Retries", justify="right")
    table.add_column("Destination / last error")
    table.add_column("Updated", no_wrap=True)

    count = 0
    for server in config.servers:
        ledger = MoveLedger.for_server(config.ledger_dir, server.name)
        for record in sorted(ledger.records(), key=lambda r: r.timestamp or ''):
            if record.moved:
                state, detail = "[green]moved[/]", record.destination or ''
            else:
                state, detail = "[yellow]pending[/]", record.last_error or record.destination or ''
            table.add_row(
                escape(server.name), record.hash, escape(record.name or ''), escape(record.category or ''),
                state, str(record.retry_count), escape(detail), record.timestamp or '',
            )
            count += 1

    if count:
        console.print(table)
    else:
        console.print("No ledger records found.")
    return count


def forget_record(config: AppConfig, server_name: str, torrent_hash: str) -> bool:
    """Removes one hash from a server's ledger so it is considered again on the next cycle."""
    if config.get_server(server_name) is None:
        raise ConfigError(f"No server named '{server_name}' in the configuration.")
    return MoveLedger.for_server(config.ledger_dir, server_name).forget(torrent_hash)


def _install_signal_handlers(engine: Engine) -> None:
    def _handle(signum, _frame):
        logging.warning(f"STATE: Received {signal.Signals(signum).name}.")
        engine.request_shutdown()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the application.

    This function is responsible for:
    -   Parsing command-line arguments.
    -   Setting up console and file logging.
    -   Creating or updating the configuration file from the template, then
        loading and validating it.
    -   Handling utility commands (`--check-config`, `--status`, `--forget`).
    -   Acquiring a lock so two instances never share a ledger directory.
    -   Running the Engine until a shutdown signal arrives.

    Returns:
        0 on successful execution, 1 on error.
    """
    parser = _build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"qbit-mover {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    console_handler = _setup_console_logging(args.simple, args.debug)
    try:
        return _run(args)
    finally:
        logging.getLogger().removeHandler(console_handler)


def _run(args: argparse.Namespace) -> int:
    logging.info(f"Using configuration file: {args.config}")
    if args.check_config:
        logging.info("--- Running Configuration Check ---")
        try:
            load_config(args.config)
        except ConfigError as e:
            logging.error(f"FAILURE: Configuration file has errors: {e}")
            return 1
        logging.info("SUCCESS: Configuration file appears to be valid.")
        return 0

    try:
        update_config(args.config, str(TEMPLATE_PATH))
        config_manager = ConfigManager(args.config)
    except ConfigError as e:
        logging.error(f"CONFIG: {e}")
        return 1
    config = config_manager.config

    if args.status:
        print_status(config)
        return 0

    try:
        setup_logging(config.log_file, config.max_log_file_size, args.debug)
    except (ValueError, OSError) as e:
        logging.error(f"Could not set up file logging: {e}")
        return 1

    lock = LockFile(Path(config.ledger_dir) / LOCK_FILE_NAME)
    try:
        lock.acquire()
    except (RuntimeError, OSError) as e:
        logging.error(f"ERROR: {e}")
        return 1

    try:
        if args.forget:
            server_name, torrent_hash = args.forget
            try:
                removed = forget_record(config, server_name, torrent_hash)
            except ConfigError as e:
                logging.error(f"CONFIG: {e}")
                return 1
            if not removed:
                logging.warning(f"LEDGER: No record for {torrent_hash} on server '{server_name}'.")
            return 0

        logging.info(f"--- qbit-mover {__version__} started with {len(config.servers)} server(s) ---")
        engine = Engine(config, config_manager=config_manager)
        _install_signal_handlers(engine)
        if args.once:
            results = engine.run_once()
            moved = sum(result.moved for result in results)
            logging.info(f"Single cycle complete. Moved {moved} torrent(s) across {len(results)} server(s).")
        else:
            engine.run()
    except ConfigError as e:
        logging.error(f"CONFIG: {e}")
        return 1
    except Exception as e:
        logging.error(f"An unexpected error occurred in main: {e}", exc_info=True)
        return 1
    finally:
        if lock.acquired:
            lock.release()
            logging.debug("Instance lock released.")
        logging.info("--- qbit-mover finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
