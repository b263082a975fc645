"""Registry of live sandboxes with idempotent release."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from agent_pipeline.orchestrator.models import SandboxHandle

if TYPE_CHECKING:
    from agent_pipeline.orchestrator.backend.base import SandboxProvider

logger = logging.getLogger(__name__)


class ResourceTracker:
    """Owns every registered sandbox until it is released exactly once."""

    def __init__(self, provider: SandboxProvider) -> None:
        self._provider = provider
        self._lock = threading.RLock()
        self._active: dict[str, SandboxHandle] = {}
        self._releasing: dict[str, SandboxHandle] = {}

    def register(self, handle: SandboxHandle) -> bool:
        with self._lock:
            if handle.sandbox_id in self._active:
                logger.debug("Sandbox %s already registered", handle.sandbox_id)
                return False
            self._active[handle.sandbox_id] = handle
        logger.debug("Registered sandbox %s for task %s", handle.sandbox_id, handle.task_id)
        return True

    def release(self, handle: SandboxHandle) -> bool:
        """Stop and remove one sandbox. Returns False if it was not active.

        The handle stays visible as in-flight until removal is claimed, so a
        ``release_all`` triggered mid-release (signal handler) still removes it.
        """

        with self._lock:
            claimed = self._active.pop(handle.sandbox_id, None)
            if claimed is not None:
                self._releasing[claimed.sandbox_id] = claimed
        if claimed is None:
            logger.debug("Sandbox %s not active; nothing to release", handle.sandbox_id)
            return False

        try:
            self._provider.stop(claimed)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to stop sandbox %s: %s", claimed.sandbox_id, error)
        finally:
            self._remove(claimed)
        return True

    def release_all(self) -> list[SandboxHandle]:
        """Release every active or in-flight sandbox; one failure never stops the rest."""

        released: list[SandboxHandle] = []
        for handle in self.active():
            if self.release(handle):
                released.append(handle)
        for handle in self.in_flight():
            if self._remove(handle):
                released.append(handle)
        if released:
            logger.info("Released %d sandbox(es)", len(released))
        return released

    def release_for_task(self, task_id: str) -> list[SandboxHandle]:
        released: list[SandboxHandle] = []
        for handle in self.active():
            if handle.task_id == task_id and self.release(handle):
                released.append(handle)
        return released

    def active(self) -> list[SandboxHandle]:
        with self._lock:
            return list(self._active.values())

    def in_flight(self) -> list[SandboxHandle]:
        """Handles whose release started but whose removal is not yet claimed."""

        with self._lock:
            return list(self._releasing.values())

    def _remove(self, handle: SandboxHandle) -> bool:
        with self._lock:
            if self._releasing.pop(handle.sandbox_id, None) is None:
                return False
        try:
            self._provider.remove(handle)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to remove sandbox %s: %s", handle.sandbox_id, error)
        else:
            logger.info("Released sandbox %s (task %s)", handle.sandbox_id, handle.task_id)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, SandboxHandle):
            return False
        with self._lock:
            return handle.sandbox_id in self._active
