from __future__ import annotations

import logging
from typing import Iterable, Iterator, Protocol

import yaml
from kubernetes import client, config, watch

import rdma_device_plugin.defaults as defaults
from rdma_device_plugin.allocate import SharedPathPolicy
from rdma_device_plugin.devices import DeviceInventory, SyntheticDevices
from rdma_device_plugin.errors import ConfigError
from rdma_device_plugin.plugin import DevicePlugin

log = logging.getLogger(__name__)


def resource_name(resource_namespace: str, pool: str) -> str:
    """
    The extended resource name the kubelet advertises, e.g. rdma-sriov/vf.
    """
    return f"{resource_namespace}/{pool}"


class Lister(Protocol):
    """
    One kind of resource: where its pools come from and how to serve one.
    """

    resource_namespace: str

    def discover(self, cancel) -> Iterator[Iterable[str]]:
        """Yield the full set of pool names every time it changes."""

    def new_plugin(self, pool: str) -> DevicePlugin:
        """Build a fresh plugin for one pool."""


class StaticDiscovery:
    """
    A fixed set of pools, reported once.
    """

    def __init__(self, pools):
        self.pools = frozenset(pools)

    def discover(self, cancel):
        log.info(f"Discovered {len(self.pools)} static pool(s): {sorted(self.pools)}")
        yield self.pools
        cancel.wait()


class ConfigMapDiscovery:
    """
    Pools listed in a ConfigMap, as a YAML list under one key.

    The ConfigMap is watched, so editing it starts and stops pools.
    Deleting it stops them all.
    """

    def __init__(
        self,
        name,
        namespace=defaults.DISCOVERY_NAMESPACE,
        key=defaults.DISCOVERY_KEY,
        retry_interval=defaults.DISCOVERY_RETRY_INTERVAL,
        watch_timeout=60,
    ):
        self.name = name
        self.namespace = namespace
        self.key = key
        self.retry_interval = retry_interval
        self.watch_timeout = watch_timeout
        self.core_api = None

    def _get_core_api(self):
        """Initializes the K8s client on first use."""
        if self.core_api is None:
            log.info("Initializing Kubernetes API client...")
            config.load_incluster_config()
            self.core_api = client.CoreV1Api()
            log.info("Kubernetes API client initialized.")
        return self.core_api

    def parse(self, data) -> frozenset:
        """
        Read the pool list out of ConfigMap data.
        """
        raw = (data or {}).get(self.key)
        if raw is None:
            return frozenset()
        try:
            pools = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"ConfigMap {self.namespace}/{self.name} key {self.key} is not YAML: {e}") from e
        if pools is None:
            return frozenset()
        if not isinstance(pools, list) or not all(isinstance(p, str) and p for p in pools):
            raise ConfigError(
                f"ConfigMap {self.namespace}/{self.name} key {self.key} must be a list of pool names."
            )
        return frozenset(pools)

    def discover(self, cancel):
        api = self._get_core_api()
        while not cancel.cancelled:
            w = watch.Watch()
            cancel.add_callback(w.stop)
            try:
                for event in w.stream(
                    api.list_namespaced_config_map,
                    namespace=self.namespace,
                    field_selector=f"metadata.name={self.name}",
                    timeout_seconds=self.watch_timeout,
                ):
                    if event["type"] == "DELETED":
                        log.warning(f"ConfigMap {self.namespace}/{self.name} was deleted.")
                        yield frozenset()
                        continue
                    try:
                        yield self.parse(event["object"].data)
                    except ConfigError as e:
                        log.error(f"Ignoring ConfigMap update: {e}")
            except client.ApiException as e:
                log.error(f"Failed to watch ConfigMap {self.namespace}/{self.name}: {e}")
                cancel.wait(self.retry_interval)
            finally:
                cancel.remove_callback(w.stop)


class RdmaLister:
    """
    RDMA SR-IOV virtual function slots.

    Every pool is a large count of identical, always healthy slots, and
    every container gets the host's /dev/infiniband.
    """

    def __init__(self, cfg, discovery=None):
        self.cfg = cfg
        self.resource_namespace = cfg.resource_namespace
        self.discovery = discovery or StaticDiscovery(cfg.pools)

    def discover(self, cancel):
        return self.discovery.discover(cancel)

    def new_plugin(self, pool):
        return DevicePlugin(
            pool=pool,
            inventory=DeviceInventory(),
            policy=SharedPathPolicy(
                host_path=self.cfg.host_path,
                container_path=self.cfg.container_path,
                permissions=self.cfg.permissions,
            ),
            health_source=SyntheticDevices(self.cfg.device_count, self.cfg.device_prefix),
            broadcast_unhealthy_on_stop=self.cfg.broadcast_unhealthy_on_stop,
        )


def get_discovery(cfg):
    """
    ConfigMap discovery when one is configured, the static pool list otherwise.
    """
    if cfg.discovery.config_map:
        return ConfigMapDiscovery(
            cfg.discovery.config_map,
            namespace=cfg.discovery.namespace,
            key=cfg.discovery.key,
        )
    return StaticDiscovery(cfg.pools)
