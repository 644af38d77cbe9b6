import select
import socket

import pytest

from octoip.fifo import BYTES_PER_FRAME
from octoip.line import LineCounter, encode_tdm_payload
from octoip.messages import Header, MsgType, build_message, encode_echo
from octoip.sock import OctoiSocket, Peer, format_address, iph_udph_overhead


def _wait_readable(sock, timeout=2.0):
    ready, _, _ = select.select([sock], [], [], timeout)
    assert ready, "socket did not become readable"


@pytest.fixture
def received():
    return []


@pytest.fixture
def server(received):
    def rx_cb(peer, data):
        received.append((peer, data))
        return 0

    srv = OctoiSocket.create_server(("127.0.0.1", 0), rx_cb=rx_cb)
    yield srv
    srv.close()


@pytest.fixture
def client(server):
    port = server.local_address[1]
    clnt = OctoiSocket.create_client(None, ("127.0.0.1", port))
    yield clnt
    clnt.close()


def test_iph_udph_overhead():
    assert iph_udph_overhead(socket.AF_INET) == 20 + 8
    assert iph_udph_overhead(socket.AF_INET6) == 40 + 8
    assert iph_udph_overhead(socket.AF_UNIX) == 20 + 8


def test_format_address():
    assert format_address("127.0.0.1", 5) == "127.0.0.1:5"
    assert format_address("::1", 5) == "[::1]:5"


def test_client_has_single_peer(client, server):
    peer = client.client_peer()
    assert peer.remote_cfg == ("127.0.0.1", server.local_address[1])
    assert peer.name == format_address("127.0.0.1", server.local_address[1])


def test_server_has_no_client_peer(server):
    with pytest.raises(RuntimeError):
        server.client_peer()


def test_echo_reaches_server_and_creates_peer(client, server, received):
    client.client_peer().tx_echo_req(5, b"xy")
    _wait_readable(server)
    assert server.handle_readable() == 0
    peer, data = received[0]
    assert data == build_message(MsgType.ECHO_REQ, 0, encode_echo(5, b"xy"))
    client_port = client.local_address[1]
    assert peer.name == format_address("127.0.0.1", client_port)
    assert server.find_peer(peer.remote) is peer


def test_second_message_reuses_peer(client, server, received):
    client.client_peer().tx_service_rej(1, "no")
    client.client_peer().tx_redir_cmd("10.0.0.1", 4000)
    for _ in range(2):
        _wait_readable(server)
        server.handle_readable()
    assert len(server.peers) == 1
    assert received[0][0] is received[1][0]
    assert Header.unpack(received[1][1]).msg_type == MsgType.REDIR_CMD


def test_server_reply_reaches_client(client, server, received):
    got = []
    client.rx_cb = lambda peer, data: got.append(data)
    client.client_peer().tx_echo_req(1)
    _wait_readable(server)
    server.handle_readable()
    srv_peer = received[0][0]
    srv_peer.tx_echo_resp(1)
    _wait_readable(client)
    client.handle_readable()
    assert got == [build_message(MsgType.ECHO_RESP, 0, encode_echo(1))]


def test_handle_readable_without_data(server):
    assert server.handle_readable() is None


def test_e1o_in_not_permitted(client):
    peer = client.client_peer()
    line = peer.ensure_line()
    assert peer.e1o_in(b"\x00" * BYTES_PER_FRAME) == 0
    assert len(line.e1o_fifo) == 0


def test_e1o_in_sends_tdm_batch(client, server, received):
    peer = client.client_peer()
    line = peer.ensure_line()
    peer.tdm_permitted = True
    frames = [bytes([i]) * BYTES_PER_FRAME for i in range(line.cfg.batching_factor)]
    assert peer.e1o_in(b"".join(frames)) == len(frames)
    _wait_readable(server)
    server.handle_readable()
    data = received[0][1]
    assert Header.unpack(data).msg_type == MsgType.TDM_DATA
    payload = encode_tdm_payload(0, frames, b"\xff" * BYTES_PER_FRAME)
    assert data[2:] == payload
    assert line.counter(LineCounter.TX_PACKETS) == 1
    assert line.counter(LineCounter.TX_BYTES) == line.iph_udph_size + len(payload)


def test_e1t_out_priming_and_underrun(server):
    peer = Peer(server, ("127.0.0.1", 9), "p")
    line = peer.ensure_line()
    line.configure(32, 0, 0, False)
    line.reset()
    assert peer.e1t_out(1) is None
    peer.tdm_permitted = True
    frame = b"\x11" * BYTES_PER_FRAME
    line.e1t_rifo.put(frame, 0)
    assert peer.e1t_out(2) is None
    assert line.primed_rx_tdm
    out = peer.e1t_out(2)
    assert out == frame + b"\xff" * BYTES_PER_FRAME
    assert line.counter(LineCounter.UNDERRUN) == 1


def test_e1t_out_substitutes_missing_frame(server):
    peer = Peer(server, ("127.0.0.1", 9), "p")
    line = peer.ensure_line()
    peer.tdm_permitted = True
    line.primed_rx_tdm = True
    line.e1t_last_frame = b"\x55" * BYTES_PER_FRAME
    a, c = b"\x01" * BYTES_PER_FRAME, b"\x03" * BYTES_PER_FRAME
    line.e1t_rifo.put(a, 0)
    line.e1t_rifo.put(c, 2)
    out = peer.e1t_out(3)
    assert out == a + line.e1t_last_frame + c
    assert line.counter(LineCounter.SUBSTITUTED) == 1


def test_peer_destroy_detaches(server):
    peer = Peer(server, ("127.0.0.1", 9), "p")
    peer.ensure_line()
    peer.tdm_permitted = True
    peer.destroy()
    assert server.peers == []
    assert peer.sock is None and peer.iline is None
    assert peer.tdm_permitted is False


def test_tx_without_socket_raises(server):
    peer = Peer(server, ("127.0.0.1", 9), "p")
    peer.destroy()
    with pytest.raises(RuntimeError):
        peer.tx_echo_req(1)


def test_set_dscp(server):
    server.set_dscp(46)
    dup = socket.fromfd(server.fileno(), socket.AF_INET, socket.SOCK_DGRAM)
    try:
        assert dup.getsockopt(socket.IPPROTO_IP, socket.IP_TOS) & 0xFC == 46 << 2
    finally:
        dup.close()


def test_set_dscp_and_priority_ranges(server):
    with pytest.raises(ValueError):
        server.set_dscp(64)
    with pytest.raises(ValueError):
        server.set_priority(256)


def test_close_detaches_peers(client):
    peer = client.client_peer()
    client.close()
    assert client.peers == []
    assert peer.sock is None