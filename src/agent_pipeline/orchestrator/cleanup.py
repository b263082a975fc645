"""Process-level exit handlers that release every tracked sandbox."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from collections.abc import Callable
from types import TracebackType
from typing import Any

from agent_pipeline.orchestrator.resources import ResourceTracker

logger = logging.getLogger(__name__)

EXIT_CODE_SIGINT = 130
EXIT_CODE_SIGTERM = 0
EXIT_CODE_CLEANUP_FAILED = 143

ExceptHook = Callable[[type[BaseException], BaseException, TracebackType | None], Any]


class CleanupCoordinator:
    """Installs SIGINT/SIGTERM/excepthook handlers once and runs cleanup once."""

    def __init__(
        self,
        tracker: ResourceTracker,
        *,
        exit_fn: Callable[[int], object] = sys.exit,
    ) -> None:
        self._tracker = tracker
        self._exit_fn = exit_fn
        self._lock = threading.Lock()
        self._installed = False
        self._cleaned_up = False
        self._previous_handlers: dict[int, Any] = {}
        self._previous_excepthook: ExceptHook | None = None

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    def install(self) -> bool:
        """Register handlers. Returns False when already installed."""

        with self._lock:
            if self._installed:
                return False
            self._installed = True

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.getsignal(signum)
                signal.signal(signum, self.handle_signal)
            except ValueError:
                # Signal handlers can only be installed in main thread.
                logger.info(
                    "Skipping %s handler outside the main thread",
                    signal.Signals(signum).name,
                )
                self._previous_handlers.pop(signum, None)

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self.handle_exception
        logger.debug("Cleanup handlers installed")
        return True

    def uninstall(self) -> None:
        with self._lock:
            if not self._installed:
                return
            self._installed = False
        for signum, previous in self._previous_handlers.items():
            try:
                signal.signal(signum, previous)
            except ValueError:
                pass
        self._previous_handlers.clear()
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def run_cleanup(self) -> bool:
        """Release all sandboxes at most once. Returns False if cleanup failed."""

        with self._lock:
            if self._cleaned_up:
                return True
            self._cleaned_up = True
        try:
            self._tracker.release_all()
        except Exception:  # noqa: BLE001
            logger.exception("Sandbox cleanup failed")
            return False
        return True

    def handle_signal(self, signum: int, _frame: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)

        if self._cleaned_up:
            logger.warning("Received %s again; exiting without cleanup", name)
            self._exit_fn(_exit_code_for(signum, cleanup_ok=True))
            return

        logger.warning("Received %s; releasing sandboxes", name)
        cleanup_ok = self.run_cleanup()
        self._exit_fn(_exit_code_for(signum, cleanup_ok=cleanup_ok))

    def handle_exception(
        self,
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            logger.error("Unhandled %s; releasing sandboxes", exc_type.__name__)
        self.run_cleanup()
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc_value, exc_traceback)


def _exit_code_for(signum: int, *, cleanup_ok: bool) -> int:
    if signum == signal.SIGINT:
        return EXIT_CODE_SIGINT
    return EXIT_CODE_SIGTERM if cleanup_ok else EXIT_CODE_CLEANUP_FAILED
