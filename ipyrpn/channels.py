import logging
from enum import Enum
import zmq
from fastcore.basics import store_attr
from .config import ConnectionConfig, env_int

log = logging.getLogger("ipyrpn.channels")


class Channel(str, Enum):
    SHELL = "shell"
    CONTROL = "control"
    IOPUB = "iopub"
    HEARTBEAT = "hb"

# Poll order is also service order when several channels are ready at once.
input_channels = (Channel.SHELL, Channel.CONTROL, Channel.HEARTBEAT)
socket_types = {Channel.HEARTBEAT: zmq.REP, Channel.IOPUB: zmq.PUB, Channel.CONTROL: zmq.ROUTER, Channel.SHELL: zmq.ROUTER}
port_attrs = {Channel.HEARTBEAT: "hb_port", Channel.IOPUB: "iopub_port", Channel.CONTROL: "control_port", Channel.SHELL: "shell_port"}


class BindError(RuntimeError):
    def __init__(self, channel:Channel, addr:str, err:Exception):
        "A channel socket could not be bound to `addr`."
        super().__init__(f"failed to bind {channel.value} channel to {addr}: {err}")
        store_attr()


class ChannelSet:
    "The kernel's four sockets, bound once from a `ConnectionConfig` and polled from a single thread."

    def __init__(self, config:ConnectionConfig, context:zmq.Context|None=None):
        store_attr("config")
        self.context = context or zmq.Context.instance()
        self.sockets = {}
        self.poller = zmq.Poller()

    def addr(self, channel:Channel)->str: return self.config.addr(getattr(self.config, port_attrs[channel]))

    def _make_socket(self, channel:Channel)->zmq.Socket:
        sock = self.context.socket(socket_types[channel])
        sock.linger = 0
        if socket_types[channel] == zmq.ROUTER and hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
        if channel == Channel.IOPUB and (hwm := env_int("IPYRPN_IOPUB_SNDHWM")) is not None: sock.sndhwm = hwm
        return sock

    def bind(self)->"ChannelSet":
        "Bind heartbeat, iopub, control, shell in that order; on failure close what was bound and raise `BindError`."
        for channel in socket_types:
            addr = self.addr(channel)
            sock = self._make_socket(channel)
            try: sock.bind(addr)
            except zmq.ZMQError as exc:
                sock.close(0)
                self.close()
                raise BindError(channel, addr, exc) from exc
            self.sockets[channel] = sock
            log.debug("%s bound to %s", channel.value, addr)
        for channel in input_channels: self.poller.register(self.sockets[channel], zmq.POLLIN)
        return self

    def socket(self, channel:Channel)->zmq.Socket:
        if channel not in self.sockets: raise RuntimeError(f"{channel.value} channel is not bound")
        return self.sockets[channel]

    def wait_readable(self, timeout:float|None=None)->list[Channel]:
        "Block until shell, control or heartbeat has input (forever when `timeout` is None); return them in service order."
        events = dict(self.poller.poll(None if timeout is None else int(timeout * 1000)))
        return [ch for ch in input_channels if events.get(self.sockets.get(ch), 0) & zmq.POLLIN]

    def recv(self, channel:Channel)->list[bytes]:
        if channel == Channel.IOPUB: raise ValueError("iopub is send-only")
        return self.socket(channel).recv_multipart()

    def send(self, channel:Channel, frames:list[bytes]):
        if channel == Channel.HEARTBEAT: raise ValueError("heartbeat only echoes; use echo_heartbeat()")
        self.socket(channel).send_multipart(frames)

    def echo_heartbeat(self)->bytes:
        "Send one heartbeat payload straight back, unparsed."
        sock = self.socket(Channel.HEARTBEAT)
        payload = sock.recv()
        sock.send(payload)
        return payload

    def close(self, linger:int|None=None):
        "Close every socket; `linger` (ms) lets queued output drain first."
        for channel, sock in list(self.sockets.items()):
            try: self.poller.unregister(sock)
            except KeyError: pass
            sock.close(linger=0 if linger is None else linger)
            del self.sockets[channel]

    def __enter__(self): return self.bind()
    def __exit__(self, *exc): self.close()
