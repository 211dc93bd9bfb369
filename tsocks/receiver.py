"""
System event handling for TSocks.

Decides when the tunnel should come back by itself: at boot, after the
package is upgraded, after a failure, and on periodic status checks.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Optional

from .config import RECONNECT_ATTEMPTS, RECONNECT_DELAY
from .exceptions import ConfigInvalid, InterfaceEstablishFailed
from .service import ServiceOrchestrator
from .state import ServiceState, StateStore

logger = logging.getLogger(__name__)

# Failures that repeat identically until the user changes something
NO_AUTO_RESTART = (ConfigInvalid, InterfaceEstablishFailed)


class ServiceReceiver:
    """Reacts to system events and state changes with Connect commands."""

    def __init__(
        self,
        orchestrator: ServiceOrchestrator,
        store: Optional[StateStore] = None,
        reconnect_delay: float = RECONNECT_DELAY,
        max_attempts: int = RECONNECT_ATTEMPTS,
    ):
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self._attempts = 0
        self._lock = threading.Lock()
        self._pending: Optional[threading.Timer] = None
        self._attached = False

    def attach(self) -> None:
        if not self._attached:
            self.orchestrator.add_listener(self.on_state_changed)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self.orchestrator.remove_listener(self.on_state_changed)
            self._attached = False
        self.cancel_pending()

    def cancel_pending(self) -> None:
        with self._lock:
            timer, self._pending = self._pending, None
        if timer is not None:
            timer.cancel()

    @property
    def reconnect_pending(self) -> bool:
        return self._pending is not None

    def _connect(self, reason: str) -> Optional[Future]:
        if self.orchestrator.state in (ServiceState.STARTING, ServiceState.RUNNING):
            return None
        logger.info(f"[SERVICE] Connecting ({reason})")
        return self.orchestrator.connect()

    def on_boot(self) -> Optional[Future]:
        if not self.store.enabled:
            return None
        return self._connect("boot")

    def on_package_replaced(self) -> Optional[Future]:
        if self.store.enabled and self.store.auto_reconnect:
            return self._connect("package replaced")
        return None

    def _wants_reconnect(self) -> bool:
        if not (self.store.enabled and self.store.auto_reconnect):
            return False
        error = self.orchestrator.last_error
        if isinstance(error, NO_AUTO_RESTART):
            logger.info(f"[SERVICE] Not reconnecting after {type(error).__name__}")
            return False
        return True

    def on_state_changed(self, state: ServiceState) -> None:
        if state == ServiceState.RUNNING:
            self._attempts = 0
            return
        if state != ServiceState.FAILED or not self._wants_reconnect():
            return
        if self._attempts >= self.max_attempts:
            logger.warning(f"[SERVICE] Gave up reconnecting after {self._attempts} attempts")
            return
        self._attempts += 1
        logger.info(f"[SERVICE] Failed; reconnecting in {self.reconnect_delay}s "
                    f"(attempt {self._attempts}/{self.max_attempts})")
        timer = threading.Timer(self.reconnect_delay, self._reconnect)
        timer.daemon = True
        with self._lock:
            previous, self._pending = self._pending, timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _reconnect(self) -> None:
        with self._lock:
            self._pending = None
        # A fatal proxy failure clears enabled after FAILED was emitted
        if self._wants_reconnect():
            self._connect("auto reconnect")

    def check_status(self) -> Optional[Future]:
        """
        Periodic check (e.g. on power events).

        A running service whose interface vanished is torn down; a stopped
        one that should be up is reconnected.
        """
        if self.orchestrator.is_running():
            return self.orchestrator.check_desync()
        if self._wants_reconnect():
            return self._connect("status check")
        return None
