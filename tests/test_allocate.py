import pytest

from conftest import make_devices
from rdma_device_plugin.allocate import (
    AllocationAdjustment,
    AllocationRequest,
    DevicePathPolicy,
    DeviceSpec,
    SharedPathPolicy,
    negotiate,
)
from rdma_device_plugin.devices import Device, DeviceInventory, Health
from rdma_device_plugin.errors import InvalidDevice


def make_snapshot():
    inventory = DeviceInventory(make_devices("d0", "d1", ("d2", Health.UNHEALTHY)))
    return inventory.list()


def test_negotiate_answers_every_request_in_order():
    snapshot = make_snapshot()
    requests = [AllocationRequest(("d0",)), AllocationRequest(("d1",)), AllocationRequest(("d0", "d1"))]

    adjustments = negotiate(requests, snapshot, SharedPathPolicy())

    assert len(adjustments) == 3
    expected = AllocationAdjustment(
        devices=(DeviceSpec("/dev/infiniband", "/dev/infiniband", "rwm"),)
    )
    assert all(a == expected for a in adjustments)


def test_negotiate_empty_batch():
    assert negotiate([], make_snapshot(), SharedPathPolicy()) == ()


def test_negotiate_unknown_device_fails_whole_batch():
    with pytest.raises(InvalidDevice) as e:
        negotiate(
            [AllocationRequest(("d0",)), AllocationRequest(("missing",))],
            make_snapshot(),
            SharedPathPolicy(),
        )
    assert e.value.device_id == "missing"


def test_negotiate_unhealthy_device_is_all_or_nothing():
    # d0 alone would be fine, but no adjustment comes back at all.
    result = None
    with pytest.raises(InvalidDevice) as e:
        result = negotiate(
            [AllocationRequest(("d0",)), AllocationRequest(("d1", "d2"))],
            make_snapshot(),
            SharedPathPolicy(),
        )
    assert e.value.device_id == "d2"
    assert e.value.reason == "unhealthy"
    assert result is None


def test_negotiate_is_deterministic():
    snapshot = make_snapshot()
    requests = [AllocationRequest(("d1",)), AllocationRequest(("d0",))]
    policy = SharedPathPolicy(host_path="/dev/infiniband/uverbs0", container_path="/dev/rdma")

    first = negotiate(requests, snapshot, policy)
    second = negotiate(requests, snapshot, policy)

    assert first == second
    assert repr(first) == repr(second)
    assert snapshot == make_snapshot()


def test_negotiate_does_not_mutate_inventory():
    inventory = DeviceInventory(make_devices("d0", "d1"))
    before = inventory.list()
    negotiate([AllocationRequest(("d0",))], inventory.list(), SharedPathPolicy())
    assert inventory.list() is before


def test_device_path_policy_uses_device_metadata():
    inventory = DeviceInventory(
        [
            Device("vf0", metadata={"host_path": "/dev/infiniband/uverbs0"}),
            Device("vf1", metadata={"host_path": "/dev/infiniband/uverbs1", "container_path": "/dev/rdma1"}),
        ]
    )

    adjustments = negotiate(
        [AllocationRequest(("vf1", "vf0"))], inventory.list(), DevicePathPolicy()
    )

    assert adjustments[0].devices == (
        DeviceSpec("/dev/infiniband/uverbs1", "/dev/rdma1", "rwm"),
        DeviceSpec("/dev/infiniband/uverbs0", "/dev/infiniband/uverbs0", "rwm"),
    )


def test_device_path_policy_requires_host_path():
    inventory = DeviceInventory([Device("vf0")])
    with pytest.raises(InvalidDevice):
        negotiate([AllocationRequest(("vf0",))], inventory.list(), DevicePathPolicy())
