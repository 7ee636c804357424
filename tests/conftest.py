import threading

import pytest

from rdma_device_plugin.allocate import SharedPathPolicy
from rdma_device_plugin.devices import Device, DeviceInventory
from rdma_device_plugin.errors import DeregistrationError, RegistrationError
from rdma_device_plugin.lifecycle import Backoff
from rdma_device_plugin.plugin import DevicePlugin

NO_WAIT = Backoff(max_attempts=3, initial=0.0, maximum=0.0)


class FakeTransport:
    def __init__(self, endpoint="rdma-sriov_vf.sock", fail=False):
        self.endpoint = endpoint
        self.fail = fail
        self.plugin = None
        self.started = 0
        self.stopped = 0

    def start(self, plugin):
        if self.fail:
            raise OSError("address already in use")
        self.plugin = plugin
        self.started += 1
        return self.endpoint

    def stop(self):
        self.stopped += 1


class FakeRegistrar:
    """
    Fails the first `failures` registrations per resource.
    """

    def __init__(self, failures=0, fail_deregister=False):
        self.failures = failures
        self.fail_deregister = fail_deregister
        self.calls = []
        self.deregistered = []
        self._lock = threading.Lock()

    def register(self, resource_name, endpoint, options):
        with self._lock:
            self.calls.append((resource_name, endpoint, options))
            attempts = sum(1 for c in self.calls if c[0] == resource_name)
        if attempts <= self.failures:
            raise RegistrationError(f"kubelet unavailable (attempt {attempts})")

    def deregister(self, resource_name, endpoint):
        self.deregistered.append(resource_name)
        if self.fail_deregister:
            raise DeregistrationError("kubelet went away")


def make_devices(*spec):
    """
    make_devices("d0", ("d2", Health.UNHEALTHY)) -> [Device, Device]
    """
    devices = []
    for item in spec:
        if isinstance(item, tuple):
            devices.append(Device(id=item[0], health=item[1]))
        else:
            devices.append(Device(id=item))
    return devices


def make_plugin(pool="vf", devices=None, **kwargs):
    inventory = DeviceInventory(devices if devices is not None else make_devices("d0", "d1"))
    return DevicePlugin(pool, inventory, SharedPathPolicy(), **kwargs)


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def transport():
    return FakeTransport()
