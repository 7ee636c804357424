from rdma_device_plugin.version import __version__
