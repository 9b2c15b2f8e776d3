"""Top-level orchestration: one Poller per configured server.

Each Poller runs on its own thread with its own client, ledger and rate
limiter, so a slow or failing server never delays the others. All Pollers
share a single shutdown event.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from .move_ledger import MoveLedger
from .mover import Mover
from .poller import CycleResult, Poller
from .rate_limiter import RateLimiter
from ..clients import TorrentClient, get_client
from ..config_manager import AppConfig, ConfigManager, ServerConfig
from ..system_manager import check_destination_paths

JOIN_POLL_SECONDS = 0.5


class Engine:
    """Starts, runs and stops the Pollers.

    Attributes:
        config (AppConfig): The configuration the Pollers were built from.
        pollers (Dict[str, Poller]): Poller per server name.
        shutdown_event (threading.Event): Set once a shutdown is requested.
    """

    def __init__(self, config: AppConfig, config_manager: Optional[ConfigManager] = None,
                 shutdown_event: Optional[threading.Event] = None,
                 client_factory: Callable[[ServerConfig], TorrentClient] = get_client,
                 mover: Optional[Mover] = None):
        self.config = config
        self.config_manager = config_manager
        self.shutdown_event = shutdown_event or threading.Event()
        self.mover = mover or Mover()
        self._threads: List[threading.Thread] = []
        self.pollers: Dict[str, Poller] = {}
        for server in config.servers:
            self.pollers[server.name] = self._build_poller(server, client_factory)

    def _build_poller(self, server: ServerConfig,
                      client_factory: Callable[[ServerConfig], TorrentClient]) -> Poller:
        server_source = None
        if self.config_manager is not None:
            server_source = lambda name=server.name: self.config_manager.current_server(name)
        return Poller(
            server=server,
            client=client_factory(server),
            ledger=MoveLedger.for_server(self.config.ledger_dir, server.name),
            rate_limiter=RateLimiter(server.rate_limit_delay, name=server.name, stop_event=self.shutdown_event),
            mover=self.mover,
            poll_interval=self.config.poll_interval,
            shutdown_event=self.shutdown_event,
            server_source=server_source,
        )

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Starts one thread per server. Returns immediately."""
        if self._threads:
            raise RuntimeError("Engine has already been started")
        for name, poller in self.pollers.items():
            check_destination_paths(name, poller.server.categories)
            thread = threading.Thread(target=poller.run, name=f"Poller-{name}", daemon=True)
            self._threads.append(thread)
            thread.start()
        logging.info(f"STATE: Engine started {len(self._threads)} poller(s).")

    def request_shutdown(self) -> None:
        """Asks every Poller to stop after the torrent it is currently moving."""
        if not self.shutdown_event.is_set():
            logging.info("STATE: Shutdown requested. Waiting for in-flight moves to finish...")
        self.shutdown_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits for every Poller thread to exit.

        `timeout` applies to each thread. `run()` calls this in short slices so
        the main thread keeps receiving signals. Returns `True` if all threads
        exited.
        """
        for thread in self._threads:
            thread.join(timeout)
        return not self.is_running

    def run(self) -> None:
        """Starts the Pollers and blocks until shutdown completes."""
        self.start()
        try:
            while self.is_running:
                self.join(JOIN_POLL_SECONDS)
        except KeyboardInterrupt:
            self.request_shutdown()
            self.join()
        logging.info("STATE: All pollers stopped.")

    def run_once(self) -> List[CycleResult]:
        """Runs a single cycle on every server in parallel and waits for all of them."""
        results: List[CycleResult] = []
        if not self.pollers:
            return results
        for name, poller in self.pollers.items():
            check_destination_paths(name, poller.server.categories)
        with ThreadPoolExecutor(max_workers=len(self.pollers), thread_name_prefix="Poller") as executor:
            futures = {executor.submit(poller.run_cycle): name for name, poller in self.pollers.items()}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logging.error(f"STATE: [{name}] Poll cycle failed: {e}", exc_info=True)
                    results.append(CycleResult(server=name, aborted=True))
        return results
