from types import SimpleNamespace

import pytest

from octoip.config import ServerConfig
from octoip.fsm import Event, InvalidMessage
from octoip.line import LineCounter, LineStat, encode_tdm_payload
from octoip.messages import (
    Header,
    MsgType,
    Service,
    build_message,
    decode_echo,
    decode_redir_cmd,
    decode_service_ack,
    decode_service_rej,
    encode_echo,
    encode_service_req,
)
from octoip.server import ServerFsm, ServerState, server_rx_cb
from octoip.sock import Peer

ADDR = ("192.0.2.1", 5000)


class FakeSock:
    def __init__(self, priv=None):
        self.peers = []
        self.iph_udph_size = 28
        self.priv = priv
        self.sent = []

    def _send(self, data, addr):
        self.sent.append(data)
        return len(data)


class Ops:
    def __init__(self, line=True):
        self.line = line
        self.connected = []
        self.disconnected = []

    def client_connected(self, server, peer, acc):
        self.connected.append(acc.user_id)
        return self.line

    def peer_disconnected(self, peer):
        self.disconnected.append(peer)


def service_req(user, service=Service.E1_FRAMED):
    return build_message(MsgType.SERVICE_REQ, 0, encode_service_req(service, user, "sw", "1.0", 0))


def last_sent(sock):
    data = sock.sent[-1]
    return Header.unpack(data).msg_type, data[2:]


@pytest.fixture
def env():
    server = ServerConfig()
    server.account("alice").set_mode("ice1usb")
    ops = Ops()
    sock = FakeSock(server)
    peer = Peer(sock, ADDR, "peer")
    fsm = ServerFsm(peer, server, ops)
    peer.priv = fsm
    return SimpleNamespace(server=server, ops=ops, sock=sock, peer=peer, fsm=fsm)


def test_accept_known_account(env):
    assert server_rx_cb(env.peer, service_req("alice")) is True
    assert env.fsm.state is ServerState.ACCEPTED
    assert env.peer.tdm_permitted is True
    assert env.peer.name == "alice"
    assert env.ops.connected == ["alice"]
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.SERVICE_ACK
    assert decode_service_ack(payload).assigned_service == Service.E1_FRAMED
    assert env.peer.iline.counter(LineCounter.CONNECT_ACCEPT) == 1
    assert env.fsm.alive_timer_active and env.fsm.echo_timer_active


def test_accept_applies_account_settings(env):
    env.server.find_account("alice").set_batching_factor(8)
    server_rx_cb(env.peer, service_req("alice"))
    assert env.peer.iline.cfg.batching_factor == 8
    assert env.peer.iline.e1o_fifo.threshold == 8


def test_unknown_user_rejected_and_retransmitted(env):
    server_rx_cb(env.peer, service_req("bob"))
    assert env.fsm.state is ServerState.REJECTED
    assert env.fsm.state_timeout == 10
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.SERVICE_REJ
    assert decode_service_rej(payload).reject_message == "Unknown user"
    server_rx_cb(env.peer, service_req("bob"))
    assert len(env.sock.sent) == 2
    assert env.sock.sent[0] == env.sock.sent[1]


def test_unsupported_service_rejected(env):
    server_rx_cb(env.peer, service_req("alice", service=2))
    assert env.fsm.state is ServerState.REJECTED
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.SERVICE_REJ
    assert decode_service_rej(payload).rejected_service == 2


def test_no_line_for_user(env):
    env.ops.line = None
    server_rx_cb(env.peer, service_req("alice"))
    assert env.fsm.state is ServerState.REJECTED
    assert decode_service_rej(last_sent(env.sock)[1]).reject_message == "No line for user"


def test_mode_none_rejected(env):
    env.server.account("carol")
    server_rx_cb(env.peer, service_req("carol"))
    rej = decode_service_rej(last_sent(env.sock)[1])
    assert rej.reject_message == "Unsupported mode for user"


def test_redirect_sends_redirect_command(env):
    acc = env.server.account("dave")
    acc.set_mode("redirect")
    acc.set_redirect("192.0.2.9", 4000)
    server_rx_cb(env.peer, service_req("dave"))
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.REDIR_CMD
    redir = decode_redir_cmd(payload)
    assert (redir.server_ip, redir.server_port) == ("192.0.2.9", 4000)


def test_new_peer_without_ops_is_rejected():
    server = ServerConfig()
    server.account("alice").set_mode("ice1usb")
    sock = FakeSock(server)
    peer = Peer(sock, ADDR, "peer")
    server_rx_cb(peer, service_req("alice"))
    assert isinstance(peer.priv, ServerFsm)
    assert peer.priv.state is ServerState.REJECTED
    assert decode_service_rej(last_sent(sock)[1]).reject_message == "No line for user"


def test_tdm_data_before_accept_not_permitted(env):
    payload = encode_tdm_payload(0, [bytes(range(32))], b"\xff" * 32)
    assert server_rx_cb(env.peer, build_message(MsgType.TDM_DATA, 0, payload)) is False


def test_tdm_data_after_accept(env):
    server_rx_cb(env.peer, service_req("alice"))
    payload = encode_tdm_payload(0, [bytes(range(32))] * 4, b"\xff" * 32)
    assert server_rx_cb(env.peer, build_message(MsgType.TDM_DATA, 0, payload)) is True
    assert env.peer.iline.e1t_next_fn32 == 4
    assert env.peer.iline.e1t_rifo.frames() == 4


def test_rx_accounting(env):
    data = service_req("alice")
    server_rx_cb(env.peer, data)
    line = env.peer.iline
    assert line.counter(LineCounter.RX_PACKETS) == 1
    assert line.counter(LineCounter.RX_BYTES) == env.sock.iph_udph_size + len(data)


def test_echo_request_answered(env):
    server_rx_cb(env.peer, build_message(MsgType.ECHO_REQ, 0, encode_echo(7, b"ab")))
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.ECHO_RESP
    echo = decode_echo(payload)
    assert (echo.seq_nr, echo.data) == (7, b"ab")


def test_echo_response_sets_rtt(env):
    server_rx_cb(env.peer, service_req("alice"))
    line = env.peer.iline
    line.set_stat(LineStat.RTT, -5)
    seq = env.fsm.send_echo_req()
    msg_type, payload = last_sent(env.sock)
    assert msg_type == MsgType.ECHO_REQ
    assert decode_echo(payload).seq_nr == seq
    server_rx_cb(env.peer, build_message(MsgType.ECHO_RESP, 0, encode_echo(seq + 1)))
    assert line.stat(LineStat.RTT) == -5
    server_rx_cb(env.peer, build_message(MsgType.ECHO_RESP, 0, encode_echo(seq)))
    assert line.stat(LineStat.RTT) >= 0


def test_invalid_message_raises(env):
    with pytest.raises(InvalidMessage):
        server_rx_cb(env.peer, bytes([0x20, 0x00, 0, 0]))


def test_client_event_not_permitted(env):
    assert env.fsm.dispatch(Event.CLNT_RX_SVC_ACK, None) is False
    assert env.fsm.state is ServerState.INIT


def test_timeout_in_rejected_terminates(env):
    server_rx_cb(env.peer, service_req("bob"))
    assert env.fsm.timeout() is True
    assert env.fsm.terminated
    assert env.ops.disconnected == [env.peer]
    assert env.peer not in env.sock.peers
    assert env.peer.priv is None
    assert env.fsm.dispatch(Event.RX_ECHO_REQ, None) is False


def test_timeout_in_accepted_is_ignored(env):
    server_rx_cb(env.peer, service_req("alice"))
    assert env.fsm.timeout() is False
    assert env.fsm.state is ServerState.ACCEPTED


def test_rx_alive_check(env):
    server_rx_cb(env.peer, service_req("alice"))
    payload = encode_tdm_payload(0, [bytes(range(32))], b"\xff" * 32)
    server_rx_cb(env.peer, build_message(MsgType.TDM_DATA, 0, payload))
    last = env.peer.last_rx_tdm
    assert env.fsm.rx_alive_check(now=last + 1) is True
    assert env.fsm.rx_alive_check(now=last + 10) is False
    assert env.fsm.terminated
    assert env.fsm.term_cause == "timeout"
    assert env.peer.tdm_permitted is False
    assert env.ops.disconnected == [env.peer]


def test_terminate_stops_timers(env):
    server_rx_cb(env.peer, service_req("alice"))
    env.fsm.terminate("error")
    assert not env.fsm.alive_timer_active
    assert not env.fsm.echo_timer_active
    assert env.fsm.term_cause == "error"
    assert env.peer.sock is None