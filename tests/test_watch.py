import queue
import threading
import time

import pytest

from conftest import make_devices
from rdma_device_plugin.devices import DeviceInventory, Health
from rdma_device_plugin.errors import StreamSendFailure
from rdma_device_plugin.utils import Cancellation
from rdma_device_plugin.watch import WatchStream


def start_serving(stream, cancel):
    sent = queue.Queue()
    errors = []

    def run():
        try:
            stream.serve(sent.put, cancel)
        except StreamSendFailure as e:
            errors.append(e)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, sent, errors


def test_initial_snapshot_then_updates_in_order():
    inventory = DeviceInventory(make_devices("d0"))
    cancel = Cancellation()
    thread, sent, _ = start_serving(WatchStream(inventory), cancel)

    first = sent.get(timeout=2)
    assert first.ids() == ["d0"]

    inventory.replace(make_devices("d0", "d1"))
    second = sent.get(timeout=2)
    inventory.replace(make_devices(("d0", Health.UNHEALTHY), "d1"))
    third = sent.get(timeout=2)

    assert second.ids() == ["d0", "d1"]
    assert not third.get("d0").healthy
    assert first.generation < second.generation < third.generation

    cancel.cancel()
    thread.join(2)
    assert not thread.is_alive()


def test_blocks_without_changes_until_cancelled():
    inventory = DeviceInventory(make_devices("d0"))
    cancel = Cancellation()
    thread, sent, _ = start_serving(WatchStream(inventory), cancel)

    sent.get(timeout=2)
    thread.join(0.2)
    assert thread.is_alive()

    cancelled_at = time.monotonic()
    cancel.cancel()
    thread.join(2)
    assert not thread.is_alive()
    assert time.monotonic() - cancelled_at < 2

    # Nothing is sent after cancellation, even if the inventory changes.
    inventory.replace(make_devices("d1"))
    assert sent.empty()


def test_broadcast_unhealthy_is_the_last_event():
    inventory = DeviceInventory(make_devices("d0", "d1"))
    cancel = Cancellation()
    stream = WatchStream(inventory, broadcast_unhealthy_on_stop=True)

    events = stream.watch(cancel)
    assert next(events).ids() == ["d0", "d1"]
    cancel.cancel()
    final = next(events)
    assert [d.health for d in final] == [Health.UNHEALTHY, Health.UNHEALTHY]
    with pytest.raises(StopIteration):
        next(events)


def test_no_broadcast_by_default():
    inventory = DeviceInventory(make_devices("d0"))
    cancel = Cancellation()
    events = WatchStream(inventory).watch(cancel)
    next(events)
    cancel.cancel()
    assert list(events) == []


def test_send_failure_ends_session_only():
    inventory = DeviceInventory(make_devices("d0"))
    stream = WatchStream(inventory)

    def broken(snapshot):
        raise ConnectionResetError("subscriber gone")

    with pytest.raises(StreamSendFailure):
        stream.serve(broken, Cancellation())

    assert inventory.list().ids() == ["d0"]

    # A second subscriber is unaffected.
    cancel = Cancellation()
    thread, sent, errors = start_serving(stream, cancel)
    assert sent.get(timeout=2).ids() == ["d0"]
    cancel.cancel()
    thread.join(2)
    assert errors == []


def test_cancelled_before_start_sends_nothing():
    inventory = DeviceInventory(make_devices("d0"))
    cancel = Cancellation()
    cancel.cancel()
    sent = []
    WatchStream(inventory).serve(sent.append, cancel)
    assert sent == []
