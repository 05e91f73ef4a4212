#!/usr/bin/env python3
"""
Jellynet Change Coordinator

Operating systems rarely report a network change once. Pulling a cable can
produce an availability event, several address events and another
availability event within a second. Rebuilding the network state for each
of them would waste work and, worse, publish several short-lived snapshots.

**The State Machine:**
    ```
    IDLE --trigger--> PENDING_REFRESH --(quiescence window)--> refresh
      ^                     |                                     |
      |                 trigger: ignored                          |
      +----------------------------- notify <---------------------+
    ```

    The first trigger schedules a timer for the quiescence window. Triggers
    that arrive while a refresh is pending are coalesced. When the timer
    fires the refresh runs, the coordinator returns to IDLE and subscribers
    are notified, whether or not the refresh succeeded or changed anything.

**Threading:**
    The state is guarded by the coordinator's own lock, which is never held
    while the refresh runs, so deciding whether to schedule a refresh never
    waits on a slow one. The window is a ``threading.Timer``; no query
    thread ever sleeps.

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import threading
from enum import Enum
from typing import Callable, Optional

from .utils import get_logger

DEFAULT_QUIESCENCE_WINDOW = 2.0


class CoordinatorState(Enum):
    IDLE = "idle"
    PENDING_REFRESH = "pending_refresh"


class ChangeCoordinator:
    """
    Debounces change notifications into a single refresh and notification.

    Attributes:
        quiescence_window (float): Seconds to wait after the first trigger
        state (CoordinatorState): Current state

    Example:
        ```python
        coordinator = ChangeCoordinator(
            refresh=manager.refresh_interfaces,
            notify=manager.notify_network_changed
        )
        coordinator.trigger("address changed")
        coordinator.trigger("availability changed")  # coalesced
        ```
    """

    def __init__(self, refresh: Callable[[], None], notify: Callable[[], None],
                 quiescence_window: float = DEFAULT_QUIESCENCE_WINDOW):
        self.logger = get_logger("jellynet.coordinator")
        self.quiescence_window = quiescence_window
        self.state = CoordinatorState.IDLE

        self._refresh = refresh
        self._notify = notify
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self.state is CoordinatorState.PENDING_REFRESH

    def trigger(self, reason: str = "network change") -> bool:
        """
        Request a refresh.

        Args:
            reason (str): Logged to explain what caused the trigger

        Returns:
            bool: True if this call scheduled a refresh, False if it was
                coalesced into one already pending (or the coordinator is closed)
        """
        with self._lock:
            if self._closed:
                return False

            if self.state is CoordinatorState.PENDING_REFRESH:
                self.logger.debug(f"Refresh already pending, ignoring: {reason}")
                return False

            self.state = CoordinatorState.PENDING_REFRESH
            self._timer = threading.Timer(self.quiescence_window, self._run)
            self._timer.daemon = True
            self._timer.start()

        self.logger.debug(f"Network change detected ({reason}), refreshing in {self.quiescence_window}s")
        return True

    def _run(self) -> None:
        with self._lock:
            if self._closed:
                return

        try:
            self._refresh()
        except Exception as e:
            self.logger.error(f"Error refreshing network state: {e}", exc_info=True)
        finally:
            with self._lock:
                self.state = CoordinatorState.IDLE
                self._timer = None
                closed = self._closed

        if closed:
            return

        try:
            self._notify()
        except Exception as e:
            self.logger.error(f"Error notifying network change subscribers: {e}", exc_info=True)

    def close(self) -> None:
        """Cancel a pending refresh. A refresh that is already running completes."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.state = CoordinatorState.IDLE
