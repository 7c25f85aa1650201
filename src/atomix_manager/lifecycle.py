"""Process lifecycle: leadership, servers, watchers and readiness signalling."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from threading import Event, Thread
from typing import Any, Callable, Optional, Sequence

import uvicorn

from .scheduler import Controller

LOG = logging.getLogger(__name__)


class ReadyFile:
    """Readiness signalled by the existence of a file (for exec probes)."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def set(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.touch()
        LOG.info("Ready file %s set", self._path)

    def unset(self) -> None:
        if self._path.exists():
            self._path.unlink()
            LOG.info("Ready file %s removed", self._path)

    def is_set(self) -> bool:
        return self._path.exists()


class ServerThread(Thread):
    """Run a uvicorn server for an ASGI app in a background thread."""

    def __init__(
        self,
        name: str,
        app: Any,
        host: str,
        port: int,
        *,
        certfile: Optional[Path] = None,
        keyfile: Optional[Path] = None,
    ) -> None:
        super().__init__(daemon=True, name=name)
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_config=None,
            ssl_certfile=str(certfile) if certfile else None,
            ssl_keyfile=str(keyfile) if keyfile else None,
        )
        self._server = uvicorn.Server(config)
        self._address = f"{host}:{port}"

    def run(self) -> None:
        LOG.info("Serving %s on %s", self.name, self._address)
        self._server.run()

    def wait_started(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self.is_alive() or time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    def stop(self) -> None:
        self._server.should_exit = True


def no_leader_election() -> None:
    LOG.info("Leader election disabled, assuming leadership")


class Lifecycle:
    """Start and stop the controller's components in order.

    Startup: acquire leadership, start the servers and wait until they are
    bound, start controller workers and watchers, then set the ready file.
    Shutdown runs in reverse, starting with the ready file.
    """

    def __init__(
        self,
        ready_file: ReadyFile,
        *,
        stop_event: Optional[Event] = None,
        acquire_leadership: Callable[[], None] = no_leader_election,
        servers: Sequence[ServerThread] = (),
        controllers: Sequence[Controller] = (),
        watchers: Sequence[Thread] = (),
    ) -> None:
        self.ready_file = ready_file
        self.stop_event = stop_event or Event()
        self._acquire_leadership = acquire_leadership
        self._servers = list(servers)
        self._controllers = list(controllers)
        self._watchers = list(watchers)

    def start(self) -> None:
        self._acquire_leadership()
        for server in self._servers:
            server.start()
            if not server.wait_started():
                raise RuntimeError(f"server {server.name} failed to start")
        for controller in self._controllers:
            controller.start()
        for watcher in self._watchers:
            watcher.start()
        self.ready_file.set()

    def wait(self, interval: float = 1.0) -> None:
        while not self.stop_event.is_set():
            self.stop_event.wait(interval)

    def stop(self, timeout: float = 5.0) -> None:
        self.ready_file.unset()
        self.stop_event.set()
        for watcher in self._watchers:
            stop = getattr(watcher, "stop", None)
            if stop is not None:
                stop()
        for watcher in self._watchers:
            if watcher.is_alive():
                watcher.join(timeout)
        for controller in self._controllers:
            controller.stop(timeout)
        for server in self._servers:
            server.stop()
        for server in self._servers:
            if server.is_alive():
                server.join(timeout)
        LOG.info("Atomix controller stopped")
