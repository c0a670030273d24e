"Debug switches: `IPYRPN_DEBUG` for verbose logging and faulthandler, `IPYRPN_DEBUG_MSGS` for message tracing."
import faulthandler, logging, os, signal, sys

def envbool(name:str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

enabled = envbool("IPYRPN_DEBUG")
trace_msgs = envbool("IPYRPN_DEBUG_MSGS")
trace_log = logging.getLogger("ipyrpn.trace")
log_format = "%(asctime)s %(levelname)s %(name)s: %(message)s"

def setup():
    "Route `ipyrpn.*` logs to the real stderr when debugging; dump stacks on crash or SIGUSR1."
    if not (enabled or trace_msgs): return
    pkg = logging.getLogger("ipyrpn")
    if not pkg.handlers:
        handler = logging.StreamHandler(sys.__stderr__)
        handler.setFormatter(logging.Formatter(log_format))
        pkg.addHandler(handler)
    pkg.setLevel(logging.DEBUG if enabled else logging.INFO)
    if not enabled: return
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(prefix:str, msg, channel=None):
    "Trace one message: direction, channel, type, id, parent id."
    if not trace_msgs: return
    h, p = msg.header, msg.parent_header
    chan = getattr(channel, "value", channel) or "-"
    trace_log.info("%s %s type=%s id=%s parent=%s", prefix, chan, h.msg_type, h.msg_id[:8], p.msg_id[:8] if p else "-")
