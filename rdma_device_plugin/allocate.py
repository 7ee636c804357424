"""
Allocation negotiation.

The kubelet sends one AllocateRequest per container creation, holding
one request per container. negotiate answers it against a single
inventory snapshot and has no side effects, so a retried request gets
the same answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence

import rdma_device_plugin.defaults as defaults
from rdma_device_plugin.devices import Device, InventorySnapshot
from rdma_device_plugin.errors import InvalidDevice

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationRequest:
    device_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class DeviceSpec:
    host_path: str
    container_path: str
    permissions: str = defaults.RDMA_PERMISSIONS


@dataclass(frozen=True)
class Mount:
    host_path: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class AllocationAdjustment:
    """
    What the container runtime must do for one container.
    """

    devices: tuple[DeviceSpec, ...] = ()
    mounts: tuple[Mount, ...] = ()
    envs: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)


class ExposurePolicy(Protocol):
    """
    Maps one validated request, with its devices, to an adjustment.
    """

    def adjust(self, request: AllocationRequest, devices: Sequence[Device]) -> AllocationAdjustment:
        ...


@dataclass(frozen=True)
class SharedPathPolicy:
    """
    Expose the same host path to every container, whatever it asked for.
    """

    host_path: str = defaults.RDMA_DEVICE_DIR
    container_path: str = defaults.RDMA_DEVICE_DIR
    permissions: str = defaults.RDMA_PERMISSIONS

    def adjust(self, request, devices):
        spec = DeviceSpec(
            host_path=self.host_path,
            container_path=self.container_path,
            permissions=self.permissions,
        )
        return AllocationAdjustment(devices=(spec,))


@dataclass(frozen=True)
class DevicePathPolicy:
    """
    Expose each device at the host path named in its metadata.

    container_path defaults to the host path.
    """

    permissions: str = defaults.RDMA_PERMISSIONS

    def adjust(self, request, devices):
        specs = []
        for device in devices:
            host_path = device.metadata.get("host_path")
            if not host_path:
                raise InvalidDevice(device.id, "missing a host_path")
            container_path = device.metadata.get("container_path", host_path)
            specs.append(DeviceSpec(host_path, container_path, self.permissions))
        return AllocationAdjustment(devices=tuple(specs))


def negotiate(
    requests: Sequence[AllocationRequest],
    inventory: InventorySnapshot,
    policy: ExposurePolicy,
) -> tuple[AllocationAdjustment, ...]:
    """
    Answer a batch of requests, one adjustment per request in order.

    Every requested id must be present and Healthy in the snapshot,
    otherwise the whole batch fails with InvalidDevice.
    """
    requests = tuple(requests)
    for request in requests:
        for device_id in request.device_ids:
            device = inventory.get(device_id)
            if device is None:
                raise InvalidDevice(device_id, "not in the inventory")
            if not device.healthy:
                raise InvalidDevice(device_id, device.health.value.lower())

    return tuple(
        policy.adjust(request, tuple(inventory.get(i) for i in request.device_ids))
        for request in requests
    )
