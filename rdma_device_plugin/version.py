__version__ = "0.1.0"
NAME = "rdma-device-plugin"
