PLUGIN_NAME = "rdma-device-plugin"
API_VERSION = "v1beta1"

RESOURCE_NAMESPACE = "rdma-sriov"
POOLS = ("vf",)

# Larger than the number of SR-IOV virtual functions a node can expose.
DEVICE_COUNT = 10000
DEVICE_PREFIX = "SRIOV-Device-"

RDMA_DEVICE_DIR = "/dev/infiniband"
RDMA_PERMISSIONS = "rwm"

DEVICE_PLUGIN_DIR = "/var/lib/kubelet/device-plugins"
KUBELET_SOCKET_PATH = f"{DEVICE_PLUGIN_DIR}/kubelet.sock"

REGISTRATION_MAX_ATTEMPTS = 5
REGISTRATION_INITIAL_BACKOFF = 1.0
REGISTRATION_MAX_BACKOFF = 30.0
REGISTRATION_TIMEOUT = 10.0

SHUTDOWN_TIMEOUT = 30.0
KUBELET_POLL_INTERVAL = 5.0
DISCOVERY_RETRY_INTERVAL = 5.0

DISCOVERY_NAMESPACE = "kube-system"
DISCOVERY_KEY = "pools"
