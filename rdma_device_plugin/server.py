import grpc
from concurrent import futures
import logging
import os
import signal
import sys
import threading

import rdma_device_plugin.config as config
import rdma_device_plugin.defaults as defaults
import rdma_device_plugin.utils as utils
from rdma_device_plugin.allocate import AllocationRequest
from rdma_device_plugin.broker import Broker
from rdma_device_plugin.discovery import RdmaLister, get_discovery
from rdma_device_plugin.errors import InvalidDevice, PluginStopped, RegistrationError
from rdma_device_plugin.lifecycle import Backoff
from rdma_device_plugin.version import NAME, __version__

# Message classes and stubs are compiled from the .proto at import time.
api_pb2, api_pb2_grpc = grpc.protos_and_services("rdma_device_plugin/proto/api.proto")

log = logging.getLogger(__name__)


def adjustment_to_proto(adjustment):
    return api_pb2.ContainerAllocateResponse(
        envs=dict(adjustment.envs),
        annotations=dict(adjustment.annotations),
        mounts=[
            api_pb2.Mount(
                container_path=m.container_path, host_path=m.host_path, read_only=m.read_only
            )
            for m in adjustment.mounts
        ],
        devices=[
            api_pb2.DeviceSpec(
                container_path=d.container_path, host_path=d.host_path, permissions=d.permissions
            )
            for d in adjustment.devices
        ],
    )


def snapshot_to_proto(snapshot):
    return api_pb2.ListAndWatchResponse(
        devices=[api_pb2.Device(ID=d.id, health=d.health.value) for d in snapshot]
    )


class DevicePluginServicer(api_pb2_grpc.DevicePluginServicer):
    """
    Answers the kubelet's device plugin calls for one pool.
    """

    def __init__(self, plugin):
        self.plugin = plugin

    def GetDevicePluginOptions(self, request, context):
        options = self.plugin.options()
        return api_pb2.DevicePluginOptions(
            pre_start_required=options.pre_start_required,
            get_preferred_allocation_available=options.get_preferred_allocation_available,
        )

    def ListAndWatch(self, request, context):
        session = self.plugin.session()
        # Ends the stream when the kubelet hangs up.
        context.add_callback(session.cancel)
        for snapshot in self.plugin.watch(session):
            yield snapshot_to_proto(snapshot)

    def Allocate(self, request, context):
        requests = [AllocationRequest(tuple(r.devices_ids)) for r in request.container_requests]
        try:
            adjustments = self.plugin.allocate(requests)
        except InvalidDevice as e:
            log.error(f"Allocate rejected: {e}")
            context.set_code(grpc.StatusCode.INVALID_ARGUMENT)
            context.set_details(str(e))
            return api_pb2.AllocateResponse()
        except PluginStopped as e:
            context.set_code(grpc.StatusCode.UNAVAILABLE)
            context.set_details(str(e))
            return api_pb2.AllocateResponse()
        return api_pb2.AllocateResponse(
            container_responses=[adjustment_to_proto(a) for a in adjustments]
        )

    def PreStartContainer(self, request, context):
        # Not requested in the options, but never fail a container start over it.
        self.plugin.pre_start(request.devices_ids)
        return api_pb2.PreStartContainerResponse()


class GrpcTransport:
    """
    Serves one pool on its own unix socket in the device plugin directory.
    """

    def __init__(self, plugin_dir, resource_namespace, pool, max_workers=10, grace=1.0):
        self.socket_path = os.path.join(plugin_dir, f"{resource_namespace}_{pool}.sock")
        self.max_workers = max_workers
        self.grace = grace
        self.server = None

    @property
    def endpoint(self):
        return os.path.basename(self.socket_path)

    def start(self, plugin):
        # Clean up an old socket and create directories
        utils.remove(self.socket_path)
        os.makedirs(os.path.dirname(self.socket_path), exist_ok=True)

        server = grpc.server(futures.ThreadPoolExecutor(max_workers=self.max_workers))
        api_pb2_grpc.add_DevicePluginServicer_to_server(DevicePluginServicer(plugin), server)
        server.add_insecure_port(f"unix://{self.socket_path}")
        server.start()
        self.server = server
        log.info(f"gRPC server for pool {plugin.pool} listening on {self.socket_path}")
        return self.endpoint

    def stop(self):
        if self.server is not None:
            self.server.stop(self.grace).wait()
            self.server = None
            log.info(f"gRPC server on {self.socket_path} stopped.")
        utils.remove(self.socket_path)


class GrpcRegistrar:
    """
    Registers plugins with the kubelet's Registration service.
    """

    def __init__(self, kubelet_socket=defaults.KUBELET_SOCKET_PATH, timeout=defaults.REGISTRATION_TIMEOUT):
        self.kubelet_socket = kubelet_socket
        self.timeout = timeout

    def register(self, resource_name, endpoint, options):
        request = api_pb2.RegisterRequest(
            version=defaults.API_VERSION,
            endpoint=endpoint,
            resource_name=resource_name,
            options=api_pb2.DevicePluginOptions(
                pre_start_required=options.pre_start_required,
                get_preferred_allocation_available=options.get_preferred_allocation_available,
            ),
        )
        with grpc.insecure_channel(f"unix://{self.kubelet_socket}") as channel:
            try:
                grpc.channel_ready_future(channel).result(timeout=self.timeout)
            except grpc.FutureTimeoutError as e:
                raise RegistrationError(f"kubelet not reachable at {self.kubelet_socket}") from e
            try:
                api_pb2_grpc.RegistrationStub(channel).Register(request, timeout=self.timeout)
            except grpc.RpcError as e:
                raise RegistrationError(
                    f"kubelet rejected {resource_name}: {e.code()} {e.details()}",
                    transient=e.code() in (grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.DEADLINE_EXCEEDED),
                ) from e

    def deregister(self, resource_name, endpoint):
        # v1beta1 has no call for this; the kubelet drops the resource
        # once the plugin socket disappears.
        log.info(f"Withdrawing {resource_name} by closing endpoint {endpoint}.")


def watch_kubelet(socket_path, cancel, on_restart, interval=defaults.KUBELET_POLL_INTERVAL):
    """
    Call on_restart whenever the kubelet socket is recreated.

    A restarted kubelet forgets every registration, so plugins must
    register again.
    """
    last = utils.inode(socket_path)
    while not cancel.wait(interval):
        current = utils.inode(socket_path)
        if current is not None and current != last:
            log.info(f"Kubelet socket {socket_path} was recreated, re-registering plugins.")
            on_restart()
        last = current


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def serve(cfg=None):
    """
    Configures and runs the broker until it exits or is interrupted.
    """
    cfg = cfg or config.load()
    log.info(f"{NAME} {__version__} starting up...")

    lister = RdmaLister(cfg, get_discovery(cfg))
    broker = Broker(
        lister,
        transport_factory=lambda namespace, pool: GrpcTransport(cfg.plugin_dir, namespace, pool),
        registrar=GrpcRegistrar(cfg.kubelet_socket, cfg.registration.timeout),
        backoff=Backoff(
            max_attempts=cfg.registration.max_attempts,
            initial=cfg.registration.initial_backoff,
            maximum=cfg.registration.max_backoff,
        ),
        shutdown_timeout=cfg.shutdown_timeout,
    )
    broker.start()
    threading.Thread(
        target=watch_kubelet,
        args=(cfg.kubelet_socket, broker.cancel, broker.restart),
        name="kubelet-watch",
        daemon=True,
    ).start()

    try:
        return broker.wait()
    except KeyboardInterrupt:
        log.info("Shutting down plugins due to interrupt.")
        if not broker.shutdown(cfg.shutdown_timeout):
            log.error(f"Plugins did not stop within {cfg.shutdown_timeout}s, forcing exit.")
            logging.shutdown()
            os._exit(1)
        return broker.exit_code


def main():
    cfg = config.load()
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    signal.signal(signal.SIGTERM, _interrupt)
    sys.exit(serve(cfg))


if __name__ == "__main__":
    main()
