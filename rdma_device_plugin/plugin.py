from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from rdma_device_plugin.allocate import negotiate
from rdma_device_plugin.errors import PluginStopped
from rdma_device_plugin.utils import Cancellation
from rdma_device_plugin.watch import WatchStream

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginOptions:
    pre_start_required: bool = False
    get_preferred_allocation_available: bool = False


class DevicePlugin:
    """
    Everything the kubelet can ask of one resource pool.

    The inventory belongs to this plugin. The health source writes to
    it, the watch streams and allocate read from it.
    """

    def __init__(self, pool, inventory, policy, health_source=None, broadcast_unhealthy_on_stop=False):
        self.pool = pool
        self.inventory = inventory
        self.policy = policy
        self.health_source = health_source
        self.stream = WatchStream(inventory, broadcast_unhealthy_on_stop)
        self.cancel = Cancellation()
        self._feeder = None

    def options(self) -> PluginOptions:
        # PreStartContainer is never needed, and the kubelet is told so.
        return PluginOptions(pre_start_required=False)

    def start(self, cancel=None):
        """
        Tie the plugin to a cancellation token and fill the inventory.

        The first device list is applied before returning so the
        kubelet never sees an empty pool on its first ListAndWatch.
        """
        if cancel is not None:
            self.cancel = cancel
        if self.health_source is None:
            return

        updates = self.health_source.watch(self.cancel)
        first = next(updates, None)
        if first is not None:
            self.inventory.replace(first)

        self._feeder = threading.Thread(
            target=self._feed, args=(updates,), name=f"health-{self.pool}", daemon=True
        )
        self._feeder.start()

    def _feed(self, updates):
        for devices in updates:
            if self.cancel.cancelled:
                break
            self.inventory.replace(devices)
        log.debug(f"Health source for pool {self.pool} finished.")

    def stop(self, timeout=None):
        self.cancel.cancel()
        if self._feeder is not None:
            self._feeder.join(timeout)

    def session(self) -> Cancellation:
        """
        A token for one subscription, cancelled when the plugin is.
        """
        return self.cancel.child()

    def watch(self, session):
        log.info(f"Kubelet subscribed to device list of pool {self.pool}.")
        return self.stream.watch(session)

    def allocate(self, requests):
        if self.cancel.cancelled:
            raise PluginStopped(f"Plugin for pool {self.pool} is stopping.")
        log.info(f"Allocate: request contains {[list(r.device_ids) for r in requests]}")
        adjustments = negotiate(requests, self.inventory.list(), self.policy)
        log.info(f"Allocate: response contains {list(adjustments)}")
        return adjustments

    def pre_start(self, device_ids):
        log.warning(
            f"PreStartContainer called for {list(device_ids)} although it was not requested; ignoring."
        )
