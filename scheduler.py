"""Tarea periódica en un hilo de fondo con manejador de parada explícito.

La usan el relay del backend y el poller del cliente. `run_once()` ejecuta un
ciclo de forma determinista (pruebas y endpoint manual).
"""

import logging
import threading
from typing import Callable, Optional


class PeriodicTask:
    """Ejecuta `fn` cada `interval` segundos hasta que se llame a stop()."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object], run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger(f"relay.scheduler.{name}")
        self.cycles = 0
        self.last_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"periodic-{self.name}", daemon=True)
        self._thread.start()
        self._logger.info("Started %s (interval=%.1fs)", self.name, self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._logger.info("Stopped %s", self.name)

    def run_once(self):
        self.cycles += 1
        return self._fn()

    def _run_loop(self) -> None:
        if not self._run_immediately:
            self._stop.wait(self.interval)
        while not self._stop.is_set():
            try:
                self.run_once()
                self.last_error = None
            except Exception as e:
                # Un ciclo fallido no detiene el lazo; el siguiente ciclo reintenta.
                self.last_error = e
                self._logger.exception("[%s] cycle error: %s", self.name, e)
            self._stop.wait(self.interval)
