import logging
import queue
import threading
import time

import rdma_device_plugin.defaults as defaults
from rdma_device_plugin.discovery import resource_name
from rdma_device_plugin.lifecycle import Backoff, PluginLifecycle
from rdma_device_plugin.utils import Cancellation

log = logging.getLogger(__name__)

DISCOVERED = "discovered"
EXITED = "exited"
RESTART = "restart"
SHUTDOWN = "shutdown"


class Broker:
    """
    Keeps exactly one PluginLifecycle per discovered pool.

    Discovery, lifecycle exits, kubelet restarts and shutdown all arrive
    as events on one queue, and only the broker's own thread touches
    the pool -> lifecycle mapping.
    """

    def __init__(
        self,
        lister,
        transport_factory,
        registrar,
        backoff=None,
        shutdown_timeout=defaults.SHUTDOWN_TIMEOUT,
    ):
        self.lister = lister
        self.transport_factory = transport_factory
        self.registrar = registrar
        self.backoff = backoff or Backoff()
        self.shutdown_timeout = shutdown_timeout
        self.cancel = Cancellation()
        self.exit_code = 0
        self.clean = True
        self.plugins = {}
        self._retiring = {}
        self._initial = None
        self._discovered = frozenset()
        self._served = set()
        self._failed = set()
        self._events = queue.Queue()
        self._loop_thread = None
        self._discovery_thread = None

    def start(self):
        self._loop_thread = threading.Thread(target=self._loop, name="broker", daemon=True)
        self._discovery_thread = threading.Thread(
            target=self._discover, name="discovery", daemon=True
        )
        self._loop_thread.start()
        self._discovery_thread.start()

    def wait(self, timeout=None):
        """
        Block until the broker stops on its own, returning the exit code.
        """
        self._loop_thread.join(timeout)
        return self.exit_code

    def restart(self):
        self._events.put((RESTART, None))

    def shutdown(self, timeout=None) -> bool:
        """
        Stop every plugin and wait for them, at most `timeout` seconds.
        False if something was still running when time ran out.
        """
        timeout = self.shutdown_timeout if timeout is None else timeout
        self._events.put((SHUTDOWN, timeout))
        if self._loop_thread is None:
            return True
        self._loop_thread.join(timeout)
        return not self._loop_thread.is_alive() and self.clean

    def _discover(self):
        try:
            for pools in self.lister.discover(self.cancel):
                if self.cancel.cancelled:
                    break
                self._events.put((DISCOVERED, frozenset(pools)))
        except Exception:
            log.exception("Pool discovery stopped unexpectedly; running plugins are kept.")

    def _loop(self):
        while True:
            kind, payload = self._events.get()
            if kind == SHUTDOWN:
                self.clean = self.stop_all(payload)
                return
            if kind == DISCOVERED:
                self.reconcile(payload)
            elif kind == RESTART:
                self.restart_all()
            elif kind == EXITED:
                self.exited(payload)
            if self.gave_up():
                self.stop_all(self.shutdown_timeout)
                return

    def reconcile(self, pools):
        """
        Start plugins for new pools and stop plugins for vanished ones.
        """
        pools = frozenset(pools)
        if self._initial is None:
            self._initial = pools
        self._discovered = pools
        running = set(self.plugins)
        log.info(f"Reconciling discovered pools {sorted(pools)} against running {sorted(running)}.")
        for pool in sorted(running - pools):
            self._stop(pool)
        for pool in sorted(pools - running):
            self._start(pool)

    def _start(self, pool):
        try:
            self._launch(pool)
        except Exception:
            log.exception(f"Could not create a plugin for pool {pool}.")
            self._failed.add(pool)

    def _launch(self, pool):
        previous = self._retiring.pop(pool, None)
        if previous is not None and not previous.join(self.shutdown_timeout):
            log.warning(f"Previous plugin for pool {pool} is still stopping; starting anyway.")

        lifecycle = PluginLifecycle(
            pool=pool,
            resource_name=resource_name(self.lister.resource_namespace, pool),
            plugin=self.lister.new_plugin(pool),
            transport=self.transport_factory(self.lister.resource_namespace, pool),
            registrar=self.registrar,
            backoff=self.backoff,
            on_exit=self._on_exit,
        )
        self.plugins[pool] = lifecycle
        self._failed.discard(pool)
        lifecycle.start()

    def _stop(self, pool):
        lifecycle = self.plugins.pop(pool)
        if lifecycle.served:
            self._served.add(pool)
        self._retiring[pool] = lifecycle
        lifecycle.stop()

    def _on_exit(self, lifecycle):
        # Runs on the lifecycle's thread, so only enqueue.
        self._events.put((EXITED, lifecycle))

    def exited(self, lifecycle):
        """
        Forget a lifecycle that reached Removed.
        """
        pool = lifecycle.pool
        if lifecycle.served:
            self._served.add(pool)
        if self._retiring.get(pool) is lifecycle:
            del self._retiring[pool]
        if self.plugins.get(pool) is not lifecycle:
            return

        del self.plugins[pool]
        if lifecycle.error is not None:
            log.error(f"Plugin for pool {pool} failed and was removed: {lifecycle.error}")
            self._failed.add(pool)

    def gave_up(self) -> bool:
        """
        True when no initially discovered pool ever registered and every
        one of them has failed for good. A pool that served once can fail
        later (after a kubelet restart) without ending the process.
        """
        if not self._initial or self._initial & self._served:
            return False
        if self._initial <= self._failed:
            log.error("No initially discovered pool could be registered, exiting.")
            self.exit_code = 1
            return True
        return False

    def restart_all(self):
        """
        Re-register every running plugin after the kubelet restarted,
        and retry discovered pools that failed while it was away.
        """
        running = sorted(self.plugins)
        pools = sorted(set(running) | (self._failed & self._discovered))
        log.info(f"Restarting plugins for pools {pools}.")
        for pool in running:
            self._stop(pool)
        for pool in pools:
            self._start(pool)

    def stop_all(self, timeout) -> bool:
        self.cancel.cancel()
        lifecycles = list(self.plugins.values()) + list(self._retiring.values())
        for lifecycle in lifecycles:
            lifecycle.stop()

        deadline = time.monotonic() + timeout
        stopped = True
        for lifecycle in lifecycles:
            if not lifecycle.join(max(0.0, deadline - time.monotonic())):
                log.error(f"Plugin {lifecycle.resource_name} did not stop within {timeout}s.")
                stopped = False
        self.plugins.clear()
        self._retiring.clear()
        log.info("All plugins stopped." if stopped else "Shutdown timed out.")
        return stopped
