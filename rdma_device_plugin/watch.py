import itertools
import logging

from rdma_device_plugin.devices import Health
from rdma_device_plugin.errors import StreamSendFailure

log = logging.getLogger(__name__)


class WatchStream:
    """
    Bridges inventory changes to one remote subscriber.

    A subscriber always gets the full current snapshot first, then
    every later snapshot in the order the inventory produced them.
    The stream only ends when its cancellation token fires (or the
    subscriber goes away), never because nothing changed.
    """

    def __init__(self, inventory, broadcast_unhealthy_on_stop=False):
        self.inventory = inventory
        self.broadcast_unhealthy_on_stop = broadcast_unhealthy_on_stop

    def watch(self, cancel):
        """
        Yield snapshots until cancel fires.

        With broadcast_unhealthy_on_stop, a last snapshot with every
        device Unhealthy is yielded after cancellation so the manager
        can evict early. Nothing follows it.
        """
        initial = self.inventory.list()
        changes = self.inventory.on_change(cancel, since=initial.generation)
        last = initial
        try:
            for snapshot in itertools.chain([initial], changes):
                if cancel.cancelled:
                    break
                last = snapshot
                yield snapshot
            if cancel.cancelled and self.broadcast_unhealthy_on_stop:
                log.info(f"Reporting all {len(last)} devices Unhealthy before stopping.")
                yield last.with_health(Health.UNHEALTHY)
        finally:
            changes.close()
            log.info(f"Watch session ended at generation {last.generation}.")

    def serve(self, send, cancel):
        """
        Push snapshots to `send` until cancelled.

        A failing send ends the session with StreamSendFailure; the
        inventory is not touched.
        """
        for snapshot in self.watch(cancel):
            try:
                send(snapshot)
            except Exception as e:
                raise StreamSendFailure(f"Subscriber stopped receiving snapshots: {e}") from e
