from types import SimpleNamespace

import pytest

from octoip.fsm import (
    INT32_MAX,
    Event,
    InvalidMessage,
    Message,
    account_peer_rx,
    event_for,
    show_socket,
    ts_us_ago,
    validate_message,
)
from octoip.line import LineCounter
from octoip.messages import (
    MsgType,
    build_message,
    encode_auth_req,
    encode_echo,
    encode_service_req,
)
from octoip.sock import OctoiSocket, Peer


class FakeSock:
    def __init__(self, iph=48):
        self.peers = []
        self.iph_udph_size = iph
        self.priv = None
        self.sent = []

    def _send(self, data, addr):
        self.sent.append(data)
        return len(data)


def test_ts_us_ago_half_second():
    assert ts_us_ago(10.0, 10.5) == 500000


def test_ts_us_ago_caps_at_int32_max():
    assert ts_us_ago(0.0, 5000.0) == INT32_MAX


def test_ts_us_ago_is_monotonic_in_now():
    assert ts_us_ago(1.0, 2.0) < ts_us_ago(1.0, 3.0)


@pytest.mark.parametrize(
    "msg_type, name",
    [
        (MsgType.SERVICE_ACK, "RX_SERVICE_ACK"),
        (MsgType.TDM_DATA, "RX_TDM_DATA"),
        (MsgType.SERVICE_REQ, "RX_SERVICE_REQ"),
        (MsgType.AUTH_REQ, "RX_AUTH_REQ"),
    ],
)
def test_event_names(msg_type, name):
    assert event_for(msg_type).event_name == name


@pytest.mark.parametrize(
    "msg_type, event",
    [
        (MsgType.TDM_DATA, Event.RX_TDM_DATA),
        (MsgType.ECHO_REQ, Event.RX_ECHO_REQ),
        (MsgType.ECHO_RESP, Event.RX_ECHO_RESP),
        (MsgType.ERROR_IND, Event.RX_ERROR_IND),
        (MsgType.SERVICE_REQ, Event.SRV_RX_SERVICE_REQ),
        (MsgType.AUTH_RESP, Event.SRV_RX_AUTH_RESP),
        (MsgType.SERVICE_ACK, Event.CLNT_RX_SVC_ACK),
        (MsgType.SERVICE_REJ, Event.CLNT_RX_SVC_REJ),
        (MsgType.REDIR_CMD, Event.CLNT_RX_REDIR_CMD),
        (MsgType.AUTH_REQ, Event.CLNT_RX_AUTH_REQ),
    ],
)
def test_event_for(msg_type, event):
    assert event_for(msg_type) is event


def test_event_for_unknown_type():
    assert event_for(0x7F) is None


def test_validate_round_trip():
    payload = encode_echo(5, b"xyz")
    msg = validate_message(build_message(MsgType.ECHO_REQ, 3, payload))
    assert isinstance(msg, Message)
    assert msg.msg_type is MsgType.ECHO_REQ
    assert msg.payload == payload
    assert msg.header.flags == 3


def test_validate_service_request():
    payload = encode_service_req(1, "alice", "sw", "1.0", 0)
    msg = validate_message(build_message(MsgType.SERVICE_REQ, 0, payload))
    assert msg.msg_type is MsgType.SERVICE_REQ
    assert msg.payload == payload


@pytest.mark.parametrize(
    "data",
    [
        b"\x10",
        bytes([0x20, MsgType.ECHO_REQ, 0, 0]),
        bytes([0x10, 0x7F]),
        build_message(MsgType.ECHO_REQ, 0, b"\x00"),
        build_message(MsgType.SERVICE_REQ, 0, b"\x00" * 10),
    ],
)
def test_validate_rejects(data):
    with pytest.raises(InvalidMessage):
        validate_message(data)


def test_validate_rejects_bad_ie_length():
    payload = bytearray(encode_auth_req(b"\x01" * 4, b"\x02" * 4))
    payload[0] = 17
    with pytest.raises(InvalidMessage):
        validate_message(build_message(MsgType.AUTH_REQ, 0, bytes(payload)))


def test_account_peer_rx_counts_packet_and_bytes():
    sock = FakeSock(iph=48)
    peer = Peer(sock, ("192.0.2.1", 5000), "p")
    line = peer.ensure_line()
    assert account_peer_rx(peer, 100) is True
    assert line.counter(LineCounter.RX_PACKETS) == 1
    assert line.counter(LineCounter.RX_BYTES) == sock.iph_udph_size + 100


def test_account_peer_rx_without_line():
    peer = Peer(FakeSock(), ("192.0.2.1", 5000), "p")
    assert account_peer_rx(peer, 10) is False


def test_show_socket():
    with OctoiSocket.create_server(("127.0.0.1", 0)) as sock:
        peer = Peer(sock, ("127.0.0.1", 9999), "p1")
        peer.priv = SimpleNamespace(state=SimpleNamespace(name="ACCEPTED"))
        peer.ensure_line()
        report = show_socket(sock).splitlines()
    assert report[0] == "OCTOI Server Socket on 127.0.0.1:0"
    assert report[1] == " Peer 'p1', Remote 127.0.0.1:9999, State ACCEPTED"
    assert "  e1oip:rx:packets: 0" in report


def test_show_socket_peer_without_line():
    with OctoiSocket.create_server(("127.0.0.1", 0)) as sock:
        Peer(sock, ("127.0.0.1", 9998), "p2")
        report = show_socket(sock).splitlines()
    assert len(report) == 2
    assert report[1].endswith("State NULL")