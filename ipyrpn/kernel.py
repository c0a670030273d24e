import logging, signal, traceback
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from typing import Callable
import zmq
from fastcore.basics import store_attr
from .channels import Channel, ChannelSet
from .codec import AuthenticationError, MalformedMessageError, Message, MessageCodec, MsgType, PROTOCOL_VERSION, new_msg_id, utcnow
from .config import ConnectionConfig, env_float
from .rpn import EvalError, KernelState, calculate
from . import debug as _dbg_mod

log = logging.getLogger("ipyrpn.kernel")


class ServerState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"


class MissingFieldError(LookupError):
    def __init__(self, msg_type:str, field:str):
        "A request arrived without a field its handler needs."
        super().__init__(f"{msg_type} missing required string field {field!r}")
        store_attr()


def impl_version()->str:
    try: return version("ipyrpn")
    except PackageNotFoundError: return "0.0.0+local"


def kernel_info_content()->dict:
    "Static kernel_info_reply content."
    return dict(status="ok", protocol_version=PROTOCOL_VERSION, implementation="ipyrpn", implementation_version=impl_version(),
        language_info=dict(name="RPN", version="0.1", mimetype="text/plain", file_extension=".txt"),
        banner="Reverse polish notation calculator", help_links=[])


class Dispatcher:
    """Runs one decoded request through busy -> handler -> idle.

    `sender` is anything with `send(channel, frames)`, normally a bound `ChannelSet`, and `codec`
    signs what goes out. Replies go back on the channel the request arrived on; status and outputs
    go to IOPub. `state` is the only mutable kernel state and is touched only by the execute handler.
    """
    def __init__(self, sender, codec:MessageCodec, state:KernelState, evaluate:Callable=calculate,
        new_id:Callable[[], str]=new_msg_id, now:Callable[[], datetime]=utcnow, config:ConnectionConfig|None=None):
        store_attr()
        self.server_state = ServerState.RUNNING
        self.handlers = {MsgType.KERNEL_INFO_REQUEST: self.handle_kernel_info, MsgType.EXECUTE_REQUEST: self.handle_execute,
            MsgType.SHUTDOWN_REQUEST: self.handle_shutdown, MsgType.CONNECT_REQUEST: self.handle_connect}

    @property
    def shutting_down(self)->bool: return self.server_state == ServerState.SHUTTING_DOWN

    def send(self, channel:Channel, msg:Message):
        _dbg_mod.tlog("send", msg, channel)
        self.sender.send(channel, self.codec.encode(msg))

    def reply_msg(self, parent:Message, msg_type:MsgType, content:dict)->Message:
        return parent.reply(msg_type, content, new_id=self.new_id, now=self.now)

    def reply(self, channel:Channel, parent:Message, msg_type:MsgType, content:dict):
        self.send(channel, self.reply_msg(parent, msg_type, content))

    def publish(self, parent:Message, msg_type:MsgType, content:dict): self.reply(Channel.IOPUB, parent, msg_type, content)

    def send_status(self, state:str, parent:Message): self.publish(parent, MsgType.STATUS, dict(execution_state=state))

    @contextmanager
    def busy_idle(self, parent:Message):
        "Send busy before work and idle after."
        self.send_status("busy", parent)
        try: yield
        finally: self.send_status("idle", parent)

    def dispatch(self, msg:Message, channel:Channel=Channel.SHELL):
        "Handle one request from `channel`, bracketed by busy/idle status on IOPub."
        _dbg_mod.tlog("recv", msg, channel)
        with self.busy_idle(msg):
            handler = self.handlers.get(MsgType.lookup(msg.msg_type), self.handle_unknown)
            try: handler(msg, channel)
            except MissingFieldError as exc: log.warning("Dropping %s: %s", msg.msg_type, exc)
            except Exception as exc: self._handle_internal_error(msg, channel, exc)

    def _handle_internal_error(self, msg:Message, channel:Channel, exc:Exception):
        log.warning("Internal error in %s handler", msg.msg_type, exc_info=exc)
        if not msg.msg_type.endswith("_request"): return
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        content = dict(status="error", ename=type(exc).__name__, evalue=str(exc), traceback=tb)
        if msg.msg_type == MsgType.EXECUTE_REQUEST: content["execution_count"] = self.state.exec_count
        self.send(channel, self.reply_msg(msg, msg.msg_type.replace("_request", "_reply"), content))

    def handle_unknown(self, msg:Message, channel:Channel):
        log.warning("Unhandled message type %r on %s", msg.msg_type, channel.value)

    def handle_kernel_info(self, msg:Message, channel:Channel):
        self.reply(channel, msg, MsgType.KERNEL_INFO_REPLY, kernel_info_content())

    def handle_connect(self, msg:Message, channel:Channel):
        ports = self.config.ports if self.config is not None else {}
        self.reply(channel, msg, MsgType.CONNECT_REPLY, dict(ports))

    def handle_shutdown(self, msg:Message, channel:Channel):
        "Reply and mark the server as shutting down; the loop exits after this message's idle status."
        content = msg.content if isinstance(msg.content, dict) else {}
        self.server_state = ServerState.SHUTTING_DOWN
        self.reply(channel, msg, MsgType.SHUTDOWN_REPLY, dict(status="ok", restart=bool(content.get("restart", False))))

    def handle_execute(self, msg:Message, channel:Channel):
        """Count the request, evaluate `content.code` on the shared stack, and report the outcome.

        The counter moves before anything is checked, so a request with no `code` still uses up a
        number. A successful run publishes the top of stack as `execute_result` (if any); a failed
        one publishes `error`. Either way an `execute_reply` goes back on `channel`.
        """
        state = self.state
        state.exec_count += 1
        count = state.exec_count
        content = msg.content if isinstance(msg.content, dict) else {}
        code = content.get("code")
        if not isinstance(code, str): raise MissingFieldError(msg.msg_type, "code")
        silent = bool(content.get("silent", False))
        if not silent: self.publish(msg, MsgType.EXECUTE_INPUT, dict(code=code, execution_count=count))
        try: self.evaluate(state.stack, code)
        except EvalError as exc:
            log.info("Evaluation failed in execution %d: %s", count, exc)
            error = dict(ename=exc.ename, evalue=str(exc), traceback=[])
            self.publish(msg, MsgType.ERROR, error)
            self.reply(channel, msg, MsgType.EXECUTE_REPLY, dict(status="error", execution_count=count, **error))
            return
        if state.stack and not silent:
            result = dict(data={"text/plain": str(state.stack[-1])}, metadata={}, execution_count=count)
            self.publish(msg, MsgType.EXECUTE_RESULT, result)
        self.reply(channel, msg, MsgType.EXECUTE_REPLY, dict(status="ok", execution_count=count))


class RpnKernel:
    def __init__(self, config:ConnectionConfig, context:zmq.Context|None=None, new_id:Callable[[], str]=new_msg_id,
        now:Callable[[], datetime]=utcnow, evaluate:Callable=calculate):
        "Wire a `ChannelSet`, `KernelState` and `Dispatcher` together for `config`."
        self.config = config
        self.channels = ChannelSet(config, context)
        self.state = KernelState()
        self.codec = config.codec()
        self.dispatcher = Dispatcher(self.channels, self.codec, self.state, evaluate=evaluate,
            new_id=new_id, now=now, config=config)
        self.shutdown_linger = env_float("IPYRPN_SHUTDOWN_LINGER", 1.0)

    def bind(self)->"RpnKernel":
        self.channels.bind()
        return self

    def start(self):
        "Bind channels, serve until shutdown_request, then close."
        _dbg_mod.setup()
        self.bind()
        log.info("ipyrpn kernel listening on %s (shell port %d)", self.config.ip, self.config.shell_port)
        try: self.serve_forever()
        finally: self.close()

    def close(self): self.channels.close(linger=int(self.shutdown_linger * 1000))

    def serve_forever(self):
        while self.run_once(): pass
        log.info("Kernel shutting down")

    def run_once(self, timeout:float|None=None)->bool:
        "One poll plus handling of each ready channel; returns False once shutdown was requested."
        for channel in self.channels.wait_readable(timeout):
            self.handle_channel(channel)
            if self.dispatcher.shutting_down: return False
        return True

    def handle_channel(self, channel:Channel):
        if channel == Channel.HEARTBEAT:
            self.channels.echo_heartbeat()
            return
        frames = self.channels.recv(channel)
        try: self.handle_frames(channel, frames)
        except Exception: log.exception("Dropped %s message after an unexpected error", channel.value)

    def handle_frames(self, channel:Channel, frames:list[bytes]):
        try: msg = self.codec.decode(frames)
        except AuthenticationError as exc:
            log.warning("Rejected %s message: %s", channel.value, exc)
            return
        except MalformedMessageError as exc:
            log.warning("Dropped malformed %s message: %s", channel.value, exc)
            return
        self.dispatcher.dispatch(msg, channel)


def run_kernel(connection_file:str):
    "Run kernel given a connection file path."
    kernel = RpnKernel(ConnectionConfig.from_file(connection_file))
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    kernel.start()
