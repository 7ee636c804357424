from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Protocol

import rdma_device_plugin.defaults as defaults
from rdma_device_plugin.errors import DeregistrationError, RegistrationError
from rdma_device_plugin.utils import Cancellation

log = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    DISCOVERED = "Discovered"
    REGISTERING = "Registering"
    SERVING = "Serving"
    FAILED = "Failed"
    STOPPING = "Stopping"
    REMOVED = "Removed"


TRANSITIONS = {
    LifecycleState.DISCOVERED: {LifecycleState.REGISTERING, LifecycleState.REMOVED},
    LifecycleState.REGISTERING: {
        LifecycleState.SERVING,
        LifecycleState.FAILED,
        LifecycleState.STOPPING,
    },
    LifecycleState.FAILED: {LifecycleState.REGISTERING, LifecycleState.REMOVED},
    LifecycleState.SERVING: {LifecycleState.STOPPING, LifecycleState.FAILED},
    LifecycleState.STOPPING: {LifecycleState.REMOVED, LifecycleState.FAILED},
    LifecycleState.REMOVED: set(),
}


class Transport(Protocol):
    """
    Serves a DevicePlugin to the kubelet. One instance per pool.
    """

    def start(self, plugin) -> str:
        """Start serving and return the endpoint to register."""

    def stop(self):
        """Stop serving and release the endpoint."""


class Registrar(Protocol):
    def register(self, resource_name: str, endpoint: str, options) -> None:
        """Announce the plugin to the kubelet, raising RegistrationError."""

    def deregister(self, resource_name: str, endpoint: str) -> None:
        """Withdraw the plugin, raising DeregistrationError."""


@dataclass(frozen=True)
class Backoff:
    max_attempts: int = defaults.REGISTRATION_MAX_ATTEMPTS
    initial: float = defaults.REGISTRATION_INITIAL_BACKOFF
    maximum: float = defaults.REGISTRATION_MAX_BACKOFF
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """
        Seconds to wait after the given failed attempt (1-based).
        """
        return min(self.maximum, self.initial * self.factor ** (attempt - 1))


class PluginLifecycle:
    """
    Drives one pool from discovery to removal.

    Discovered -> Registering -> Serving -> Stopping -> Removed, with
    Failed between registration attempts. Runs on its own thread; stop()
    only signals, join() waits for Removed.
    """

    def __init__(self, pool, resource_name, plugin, transport, registrar, backoff=None, on_exit=None):
        self.pool = pool
        self.resource_name = resource_name
        self.plugin = plugin
        self.transport = transport
        self.registrar = registrar
        self.backoff = backoff or Backoff()
        self.on_exit = on_exit
        self.cancel = Cancellation()
        self.state = LifecycleState.DISCOVERED
        self.error = None
        self.endpoint = None
        self._registered = False
        self._serving = threading.Event()
        self._thread = None

    def __repr__(self):
        return f"PluginLifecycle({self.resource_name}, {self.state.value})"

    def _set_state(self, state):
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.resource_name}: illegal transition {self.state.value} -> {state.value}")
        log.info(f"{self.resource_name}: {self.state.value} -> {state.value}")
        self.state = state
        if state is LifecycleState.SERVING:
            self._serving.set()

    def start(self):
        self._thread = threading.Thread(
            target=self.run, name=f"plugin-{self.pool}", daemon=True
        )
        self._thread.start()

    def stop(self):
        self.cancel.cancel()

    def join(self, timeout=None) -> bool:
        """
        Wait for the lifecycle to reach Removed. True if it did.
        """
        if self._thread is None:
            return self.state is LifecycleState.REMOVED
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def wait_serving(self, timeout=None) -> bool:
        return self._serving.wait(timeout)

    @property
    def served(self) -> bool:
        """
        True once the lifecycle has reached Serving, even if it stopped since.
        """
        return self._serving.is_set()

    def run(self):
        try:
            self._run()
        except Exception as e:
            log.exception(f"{self.resource_name}: lifecycle failed unexpectedly")
            self.error = e
            if self.state is not LifecycleState.FAILED:
                self._set_state(LifecycleState.FAILED)
            self._teardown()
        finally:
            self._set_state(LifecycleState.REMOVED)
            if self.on_exit is not None:
                self.on_exit(self)

    def _run(self):
        if self.cancel.cancelled:
            return
        self._set_state(LifecycleState.REGISTERING)
        try:
            self.plugin.start(self.cancel)
            self.endpoint = self.transport.start(self.plugin)
        except Exception as e:
            log.exception(f"{self.resource_name}: could not start serving")
            self.error = e
            self._set_state(LifecycleState.FAILED)
            self._teardown()
            return

        if self._register():
            self._set_state(LifecycleState.SERVING)
            self.cancel.wait()

        if self.state is not LifecycleState.FAILED:
            self._set_state(LifecycleState.STOPPING)
        self._teardown()

    def _register(self) -> bool:
        """
        Register with bounded exponential backoff.

        Returns False when cancelled or when every attempt failed, in
        which case self.error holds the last failure.
        """
        attempts = self.backoff.max_attempts
        for attempt in range(1, attempts + 1):
            if self.cancel.cancelled:
                return False
            try:
                self.registrar.register(self.resource_name, self.endpoint, self.plugin.options())
                self._registered = True
                log.info(f"{self.resource_name}: registered with kubelet at endpoint {self.endpoint}.")
                return True
            except RegistrationError as e:
                log.warning(f"{self.resource_name}: registration attempt {attempt}/{attempts} failed: {e}")
                self._set_state(LifecycleState.FAILED)
                if attempt == attempts:
                    self.error = e
                    break
                if self.cancel.wait(self.backoff.delay(attempt)):
                    return False
                self._set_state(LifecycleState.REGISTERING)

        log.error(f"{self.resource_name}: giving up after {attempts} registration attempts.")
        return False

    def _teardown(self):
        # Watch streams end first, then the endpoint goes away.
        self.cancel.cancel()
        if self._registered:
            self._registered = False
            try:
                self.registrar.deregister(self.resource_name, self.endpoint)
            except DeregistrationError as e:
                log.warning(f"{self.resource_name}: deregistration failed, continuing teardown: {e}")
            except Exception:
                log.exception(f"{self.resource_name}: deregistration raised, continuing teardown")
        try:
            self.transport.stop()
        finally:
            self.plugin.stop()
