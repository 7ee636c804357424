from __future__ import annotations

import enum
import functools
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Mapping, Optional, Protocol

import rdma_device_plugin.defaults as defaults

log = logging.getLogger(__name__)


class Health(enum.Enum):
    # Values are the strings the kubelet expects on the wire.
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class Device:
    id: str
    health: Health = Health.HEALTHY
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.health is Health.HEALTHY


@dataclass(frozen=True)
class InventorySnapshot:
    """
    An immutable, ordered listing of a pool's devices.

    generation increases by one every time the inventory is replaced,
    so a reader can tell which snapshot came first.
    """

    devices: tuple[Device, ...] = ()
    generation: int = 0

    @functools.cached_property
    def _by_id(self) -> dict[str, Device]:
        return {device.id: device for device in self.devices}

    def __iter__(self):
        return iter(self.devices)

    def __len__(self):
        return len(self.devices)

    def __contains__(self, device_id):
        return device_id in self._by_id

    def get(self, device_id: str) -> Optional[Device]:
        return self._by_id.get(device_id)

    def ids(self) -> list[str]:
        return [device.id for device in self.devices]

    def with_health(self, health: Health) -> "InventorySnapshot":
        """
        The same devices, all reporting the given health.
        """
        devices = tuple(replace(device, health=health) for device in self.devices)
        return InventorySnapshot(devices=devices, generation=self.generation)


class DeviceInventory:
    """
    The current set of devices for one resource pool.

    The health source is the only writer and replaces the whole
    snapshot at once. Readers only ever see complete snapshots.
    """

    def __init__(self, devices: Iterable[Device] = ()):
        self._cond = threading.Condition()
        self._snapshot = InventorySnapshot(devices=self._validate(devices))

    @staticmethod
    def _validate(devices) -> tuple[Device, ...]:
        devices = tuple(devices)
        seen = set()
        for device in devices:
            if device.id in seen:
                raise ValueError(f"Duplicate device id {device.id} in inventory.")
            seen.add(device.id)
        return devices

    @property
    def generation(self) -> int:
        with self._cond:
            return self._snapshot.generation

    def list(self) -> InventorySnapshot:
        with self._cond:
            return self._snapshot

    def replace(self, devices: Iterable[Device]) -> InventorySnapshot:
        """
        Swap in a new device list and wake every watcher.
        """
        devices = self._validate(devices)
        with self._cond:
            self._snapshot = InventorySnapshot(
                devices=devices, generation=self._snapshot.generation + 1
            )
            snapshot = self._snapshot
            self._cond.notify_all()
        log.debug(f"Inventory now at generation {snapshot.generation} with {len(snapshot)} devices.")
        return snapshot

    def wake(self):
        with self._cond:
            self._cond.notify_all()

    def on_change(self, cancel, since: Optional[int] = None) -> Iterator[InventorySnapshot]:
        """
        Yield the latest snapshot each time the inventory changes after
        generation `since` (default: the time of this call), until
        cancel fires.

        Snapshots replaced faster than the consumer reads them are
        skipped, the consumer always gets the newest one.
        """
        seen = self.generation if since is None else since
        return self._changes(cancel, seen)

    def _changes(self, cancel, seen):
        cancel.add_callback(self.wake)
        try:
            while True:
                with self._cond:
                    self._cond.wait_for(
                        lambda: cancel.cancelled or self._snapshot.generation != seen
                    )
                    if cancel.cancelled:
                        return
                    snapshot = self._snapshot
                seen = snapshot.generation
                yield snapshot
        finally:
            cancel.remove_callback(self.wake)


class HealthSource(Protocol):
    """
    Anything producing device lists over time.

    watch yields a complete device list whenever device health changes,
    and returns when it has nothing more to report or cancel fires.
    """

    def watch(self, cancel) -> Iterator[list[Device]]:
        ...


class SyntheticDevices:
    """
    A fixed number of always-healthy devices.

    RDMA SR-IOV slots are not individually addressable, so the pool is
    advertised as a large count of identical placeholders.
    """

    def __init__(self, count=defaults.DEVICE_COUNT, prefix=defaults.DEVICE_PREFIX):
        self.count = count
        self.prefix = prefix

    def devices(self) -> list[Device]:
        return [Device(id=f"{self.prefix}{i}") for i in range(self.count)]

    def watch(self, cancel):
        log.info(f"Advertising {self.count} synthetic devices with prefix {self.prefix}.")
        yield self.devices()
