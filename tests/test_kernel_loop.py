import json, logging
from ipyrpn.codec import DELIM
from ipyrpn.kernel import ServerState
from .kernel_utils import *


def _types(outputs): return [m["msg_type"] for m in outputs]
def _states(outputs): return [m["content"]["execution_state"] for m in iopub_msgs(outputs, "status")]


def test_execute_round_trip(kernel_loop):
    kernel, fe, _ = kernel_loop
    msg_id = fe.send("execute_request", dict(code="3 4 +", silent=False))
    reply = fe.reply(msg_id)
    outputs = fe.iopub_drain(msg_id)
    assert reply["msg_type"] == "execute_reply"
    assert reply["content"] == dict(status="ok", execution_count=1)
    assert reply["header"]["session"] == "S1"
    assert _types(outputs) == ["status", "execute_input", "execute_result", "status"]
    assert _states(outputs) == ["busy", "idle"]
    result = iopub_msgs(outputs, "execute_result")[0]["content"]
    assert result["data"] == {"text/plain": "7"}
    assert result["execution_count"] == 1
    assert kernel.state.stack == [7]


def test_kernel_info_parented(kernel_loop):
    _, fe, _ = kernel_loop
    msg_id = fe.send("kernel_info_request")
    reply = fe.reply(msg_id)
    assert reply["parent_header"]["msg_id"] == msg_id
    assert reply["content"]["implementation"] == "ipyrpn"
    assert reply["content"]["language_info"]["name"] == "RPN"
    assert _states(fe.iopub_drain(msg_id)) == ["busy", "idle"]


def test_stack_persists_and_counter_increases(kernel_loop):
    _, fe, _ = kernel_loop
    counts = []
    for code in ("1 2", "+", "+", "4 *"):
        msg_id = fe.send("execute_request", dict(code=code))
        counts.append(fe.reply(msg_id)["content"]["execution_count"])
        last = fe.iopub_drain(msg_id)
    assert counts == [1, 2, 3, 4]
    assert iopub_msgs(last, "execute_result")[0]["content"]["data"]["text/plain"] == "12"


def test_eval_error_reported(kernel_loop):
    _, fe, _ = kernel_loop
    msg_id = fe.send("execute_request", dict(code="1 +"))
    reply = fe.reply(msg_id)["content"]
    assert reply["status"] == "error"
    assert reply["ename"] == "StackUnderflow"
    assert reply["execution_count"] == 1
    outputs = fe.iopub_drain(msg_id)
    assert _types(outputs) == ["status", "execute_input", "error", "status"]


def test_tampered_signature_ignored(kernel_loop, caplog):
    _, fe, _ = kernel_loop
    caplog.set_level(logging.WARNING, logger="ipyrpn")
    frames = fe.session.serialize(fe.msg("execute_request", dict(code="1")))
    sig_idx = frames.index(DELIM) + 1
    sig = bytearray(frames[sig_idx])
    sig[0] = ord("0") if sig[0] != ord("0") else ord("1")
    frames[sig_idx] = bytes(sig)
    fe.send_frames(frames)
    assert fe.quiet("shell")
    assert "Rejected shell message" in caplog.text
    msg_id = fe.send("execute_request", dict(code="5"))
    assert fe.reply(msg_id)["content"] == dict(status="ok", execution_count=1)


def test_wrong_key_ignored(tmp_path):
    with running_kernel(tmp_path) as (_, fe, _):
        intruder = RawFrontend(fe.config, session="S2", key="not-the-key")
        try:
            intruder.send("kernel_info_request")
            assert intruder.quiet("shell")
        finally: intruder.close()
        fe.reply(fe.send("kernel_info_request"))


def test_malformed_frames_dropped(kernel_loop, caplog):
    _, fe, _ = kernel_loop
    caplog.set_level(logging.WARNING, logger="ipyrpn")
    fe.send_frames([b"no delimiter here"])
    fe.send_frames([DELIM, b"ab"])
    assert fe.quiet("shell")
    assert "Dropped malformed shell message" in caplog.text
    fe.reply(fe.send("kernel_info_request"))


def test_unknown_request_gets_status_only(kernel_loop):
    _, fe, _ = kernel_loop
    msg_id = fe.send("complete_request", dict(code="1", cursor_pos=1))
    assert _states(fe.iopub_drain(msg_id)) == ["busy", "idle"]
    assert fe.quiet("shell")


def test_control_channel_requests(kernel_loop):
    kernel, fe, _ = kernel_loop
    msg_id = fe.send("connect_request", channel="control")
    reply = fe.reply(msg_id, channel="control")
    assert reply["content"]["shell_port"] == kernel.config.shell_port
    assert reply["content"]["hb_port"] == kernel.config.hb_port


def test_heartbeat_between_requests(kernel_loop):
    _, fe, _ = kernel_loop
    assert fe.ping(b"ping") == b"ping"
    msg_id = fe.send("execute_request", dict(code="2 2 *"))
    assert fe.ping(b"\x00raw bytes\xff") == b"\x00raw bytes\xff"
    assert fe.reply(msg_id)["content"]["status"] == "ok"


def test_shutdown_stops_loop(kernel_loop):
    kernel, fe, thread = kernel_loop
    msg_id = fe.send("shutdown_request", dict(restart=False), channel="control")
    reply = fe.reply(msg_id, channel="control")
    assert reply["msg_type"] == "shutdown_reply"
    assert reply["content"] == dict(status="ok", restart=False)
    assert _states(fe.iopub_drain(msg_id)) == ["busy", "idle"]
    thread.join(timeout=TIMEOUT)
    assert not thread.is_alive()
    assert kernel.dispatcher.server_state == ServerState.SHUTTING_DOWN


def _signed(fe, header:bytes, content:bytes = b"{}")->list[bytes]:
    parts = [header, b"{}", b"{}", content]
    return [DELIM, fe.session.sign(parts), *parts]


def test_deeply_nested_content_dropped(kernel_loop, caplog):
    _, fe, thread = kernel_loop
    caplog.set_level(logging.WARNING, logger="ipyrpn")
    header = json.dumps(dict(msg_id="deep-1", session="S1", msg_type="execute_request", version="5.3")).encode()
    fe.send_frames(_signed(fe, header, b"[" * 200_000 + b"]" * 200_000))
    assert fe.quiet("shell")
    assert thread.is_alive()
    assert "Dropped malformed shell message" in caplog.text
    msg_id = fe.send("execute_request", dict(code="8"))
    assert fe.reply(msg_id)["content"] == dict(status="ok", execution_count=1)


def test_lone_surrogate_session_dropped(kernel_loop, caplog):
    _, fe, thread = kernel_loop
    caplog.set_level(logging.WARNING, logger="ipyrpn")
    header = json.dumps(dict(msg_id="bad-1", session="\ud800", msg_type="kernel_info_request", version="5.3")).encode()
    fe.send_frames(_signed(fe, header))
    assert fe.quiet("shell")
    assert thread.is_alive()
    assert "header field 'session'" in caplog.text
    fe.reply(fe.send("kernel_info_request"))


def test_unexpected_error_keeps_loop_alive(kernel_loop, caplog, monkeypatch):
    kernel, fe, thread = kernel_loop
    caplog.set_level(logging.WARNING, logger="ipyrpn")
    def boom(msg, channel): raise RuntimeError("dispatch exploded")
    monkeypatch.setattr(kernel.dispatcher, "dispatch", boom)
    fe.send("kernel_info_request")
    assert fe.quiet("shell")
    assert thread.is_alive()
    assert "Dropped shell message after an unexpected error" in caplog.text
    monkeypatch.undo()
    fe.reply(fe.send("kernel_info_request"))
