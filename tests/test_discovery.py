import pytest
from kubernetes import client

import rdma_device_plugin.discovery as discovery
from rdma_device_plugin.config import PluginConfig
from rdma_device_plugin.discovery import (
    ConfigMapDiscovery,
    RdmaLister,
    StaticDiscovery,
    get_discovery,
    resource_name,
)
from rdma_device_plugin.errors import ConfigError
from rdma_device_plugin.utils import Cancellation


class FakeConfigMap:
    def __init__(self, data):
        self.data = data


class FakeWatch:
    """
    Replays one batch of events per stream() call.
    """

    batches = []
    stops = 0

    def stream(self, func, **kwargs):
        assert kwargs["field_selector"] == "metadata.name=rdma-pools"
        batch = FakeWatch.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        yield from batch

    def stop(self):
        FakeWatch.stops += 1


@pytest.fixture
def fake_watch(monkeypatch):
    FakeWatch.batches = []
    FakeWatch.stops = 0
    monkeypatch.setattr(discovery.watch, "Watch", FakeWatch)
    return FakeWatch


def test_resource_name():
    assert resource_name("rdma-sriov", "vf") == "rdma-sriov/vf"


def test_static_discovery_emits_once_then_blocks():
    cancel = Cancellation()
    pools = StaticDiscovery(["vf", "pf"]).discover(cancel)
    assert next(pools) == {"vf", "pf"}
    cancel.cancel()
    assert list(pools) == []


def test_configmap_parse():
    source = ConfigMapDiscovery("rdma-pools")
    assert source.parse({"pools": "- vf\n- pf\n"}) == {"vf", "pf"}
    assert source.parse({"pools": ""}) == frozenset()
    assert source.parse(None) == frozenset()
    with pytest.raises(ConfigError):
        source.parse({"pools": "vf: 1"})
    with pytest.raises(ConfigError):
        source.parse({"pools": "[vf, ["})


def test_configmap_discovery_follows_events(fake_watch):
    fake_watch.batches = [
        [
            {"type": "ADDED", "object": FakeConfigMap({"pools": "[vf]"})},
            {"type": "MODIFIED", "object": FakeConfigMap({"pools": "not: [a list"})},
            {"type": "MODIFIED", "object": FakeConfigMap({"pools": "[vf, pf]"})},
            {"type": "DELETED", "object": FakeConfigMap({"pools": "[vf, pf]"})},
        ]
    ]
    source = ConfigMapDiscovery("rdma-pools")
    source.core_api = object.__new__(client.CoreV1Api)
    cancel = Cancellation()

    pools = source.discover(cancel)
    assert next(pools) == {"vf"}
    assert next(pools) == {"vf", "pf"}
    assert next(pools) == frozenset()
    pools.close()


def test_configmap_discovery_retries_after_api_error(fake_watch):
    fake_watch.batches = [
        client.ApiException(status=500, reason="boom"),
        [{"type": "ADDED", "object": FakeConfigMap({"pools": "[vf]"})}],
    ]
    source = ConfigMapDiscovery("rdma-pools", retry_interval=0)
    source.core_api = object.__new__(client.CoreV1Api)

    pools = source.discover(Cancellation())
    assert next(pools) == {"vf"}
    pools.close()


def test_get_discovery_picks_configmap_when_configured():
    cfg = PluginConfig()
    assert isinstance(get_discovery(cfg), StaticDiscovery)
    cfg.discovery.config_map = "rdma-pools"
    assert isinstance(get_discovery(cfg), ConfigMapDiscovery)


def test_rdma_lister_builds_plugins():
    cfg = PluginConfig(device_count=5, host_path="/dev/infiniband", broadcast_unhealthy_on_stop=True)
    lister = RdmaLister(cfg)

    assert lister.resource_namespace == "rdma-sriov"
    assert next(lister.discover(Cancellation())) == {"vf"}

    plugin = lister.new_plugin("vf")
    plugin.start(Cancellation())
    assert len(plugin.inventory.list()) == 5
    assert plugin.stream.broadcast_unhealthy_on_stop
    assert plugin.policy.host_path == "/dev/infiniband"
    plugin.stop(2)

    # Each pool owns its inventory.
    assert lister.new_plugin("vf").inventory is not plugin.inventory
