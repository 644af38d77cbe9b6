"""UDP sockets and peers of the OCTOI protocol.

A server socket is bound but not connected and learns any number of peers
from incoming datagrams.  A client socket is connected to one remote and
has exactly one peer.
"""

from __future__ import annotations

import logging
import socket
from typing import Callable, List, Optional, Tuple

from . import messages
from .fifo import BYTES_PER_FRAME
from .line import E1oipLine, LineCounter, LineStat
from .messages import MsgType, build_message
from .rifo import FrameMissingError, RifoUnderrunError

logger = logging.getLogger(__name__)

_RX_BUF_SIZE = 2048
_IDLE_FRAME = b"\xff" * BYTES_PER_FRAME

_IPV6_TCLASS = getattr(socket, "IPV6_TCLASS", 67)
_SO_PRIORITY = getattr(socket, "SO_PRIORITY", 12)

RxCallback = Callable[["Peer", bytes], object]


def iph_udph_overhead(family: int) -> int:
    """Typical number of IP plus UDP header bytes for an address family."""
    if family == socket.AF_INET6:
        return 40 + 8
    if family != socket.AF_INET:
        logger.error("Unknown domain %s of socket", family)
    return 20 + 8


def format_address(ip: str, port: int) -> str:
    """Human-readable ``ip:port``, with IPv6 addresses in brackets."""
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _resolve(ip: str, port: int) -> Tuple[int, tuple]:
    infos = socket.getaddrinfo(
        ip, port, type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP,
        flags=socket.AI_NUMERICHOST,
    )
    family, _, _, _, sockaddr = infos[0]
    return family, tuple(sockaddr)


class Peer:
    """One remote OCTOI endpoint reachable over an :class:`OctoiSocket`."""

    def __init__(self, sock: "OctoiSocket", remote: tuple, name: str) -> None:
        self.sock: Optional[OctoiSocket] = sock
        self.remote = tuple(remote)
        self.remote_cfg = (self.remote[0], self.remote[1])
        self.name = name
        self.last_rx_tdm = 0
        self.iline: Optional[E1oipLine] = None
        self.tdm_permitted = False
        self.priv: object = None
        sock.peers.append(self)

    def __repr__(self) -> str:
        return f"Peer({self.name!r})"

    def ensure_line(self) -> E1oipLine:
        """Return the peer's E1oIP line, creating it on first use."""
        if self.iline is None:
            self.iline = E1oipLine(
                self.name, lambda payload: self.tx(MsgType.TDM_DATA, 0, payload)
            )
            if self.sock is not None:
                self.iline.iph_udph_size = self.sock.iph_udph_size
        return self.iline

    # transmit

    def tx(self, msg_type: int, flags: int, payload: bytes = b"") -> int:
        """Send one message to the peer; return the number of bytes sent."""
        if self.sock is None:
            raise RuntimeError(f"{self.name}: peer has no socket")
        msg = build_message(msg_type, flags, payload)
        try:
            sent = self.sock._send(msg, self.remote)
        except OSError as exc:
            logger.error("%s: Error in sendmsg: %s", self.name, exc)
            raise
        if sent != len(msg):
            logger.error("%s: Short write in sendmsg: %d != %d", self.name, sent, len(msg))
        return sent

    def tx_echo_req(self, seq_nr: int, data: bytes = b"") -> int:
        logger.debug("%s: Tx ECHO_REQ", self.name)
        return self.tx(MsgType.ECHO_REQ, 0, messages.encode_echo(seq_nr, data))

    def tx_echo_resp(self, seq_nr: int, data: bytes = b"") -> int:
        logger.debug("%s: Tx ECHO_RESP", self.name)
        return self.tx(MsgType.ECHO_RESP, 0, messages.encode_echo(seq_nr, data))

    def tx_service_req(self, service, subscriber_id, software_id, software_version,
                       capability_flags) -> int:
        logger.info("%s: Tx SERVICE_REQ", self.name)
        return self.tx(MsgType.SERVICE_REQ, 0, messages.encode_service_req(
            service, subscriber_id, software_id, software_version, capability_flags))

    def tx_service_ack(self, assigned_service, server_id, software_id, software_version,
                       capability_flags) -> int:
        logger.info("%s: Tx SERVICE_ACK", self.name)
        return self.tx(MsgType.SERVICE_ACK, 0, messages.encode_service_ack(
            assigned_service, server_id, software_id, software_version, capability_flags))

    def tx_service_rej(self, rejected_service: int, message: str) -> int:
        logger.info("%s: Tx SERVICE_REJ", self.name)
        return self.tx(MsgType.SERVICE_REJ, 0,
                       messages.encode_service_rej(rejected_service, message))

    def tx_redir_cmd(self, server_ip: str, server_port: int) -> int:
        logger.info("%s: Tx REDIR_CMD", self.name)
        return self.tx(MsgType.REDIR_CMD, 0, messages.encode_redir_cmd(server_ip, server_port))

    def tx_auth_req(self, rand: bytes, autn: bytes) -> int:
        logger.info("%s: Tx AUTH_REQ", self.name)
        return self.tx(MsgType.AUTH_REQ, 0, messages.encode_auth_req(rand, autn))

    def tx_auth_resp(self, res: bytes, auts: bytes) -> int:
        logger.info("%s: Tx AUTH_RESP", self.name)
        return self.tx(MsgType.AUTH_RESP, 0, messages.encode_auth_resp(res, auts))

    def tx_error_ind(self, cause: int, message: str, orig: bytes = b"") -> int:
        logger.info("%s: Tx ERROR_IND", self.name)
        return self.tx(MsgType.ERROR_IND, 0, messages.encode_error_ind(cause, message, orig))

    # TDM data path

    def e1o_in(self, data: bytes) -> int:
        """Queue frames received from the E1 side for sending over IP.

        Returns the number of frames queued (0 while TDM is not permitted).
        """
        if not self.tdm_permitted or self.iline is None:
            return 0
        line = self.iline
        wanted = len(data) // BYTES_PER_FRAME
        stored = line.e1o_fifo.put_many(data)
        if stored < wanted:
            line.add_counter(LineCounter.E1O_OVERFLOW, wanted - stored)
        line.set_stat(LineStat.E1O_FIFO, len(line.e1o_fifo))
        return stored

    def e1t_out(self, count: int) -> Optional[bytes]:
        """Produce ``count`` frames for transmission on the E1 side.

        Returns ``None`` while TDM is not permitted or the receive buffer is
        still being pre-filled; missing frames are substituted.
        """
        if not self.tdm_permitted or self.iline is None:
            return None
        line = self.iline
        if not line.primed_rx_tdm:
            if line.e1t_rifo.frames() > line.cfg.prefill_frame_count:
                line.primed_rx_tdm = True
            return None

        out = []
        for _ in range(count):
            try:
                out.append(line.e1t_rifo.get())
            except FrameMissingError:
                line.add_counter(LineCounter.SUBSTITUTED, 1)
                out.append(line.e1t_last_frame)
            except RifoUnderrunError:
                line.add_counter(LineCounter.UNDERRUN, 1)
                out.append(_IDLE_FRAME)
        line.set_stat(LineStat.E1T_FIFO, line.e1t_rifo.depth())
        return b"".join(out)

    def destroy(self) -> None:
        """Detach the peer from its socket and drop its line."""
        self.tdm_permitted = False
        if self.sock is not None and self in self.sock.peers:
            self.sock.peers.remove(self)
        self.sock = None
        self.iline = None


class OctoiSocket:
    """A non-blocking UDP socket carrying OCTOI messages."""

    def __init__(self, sock: socket.socket, server_mode: bool,
                 local: Optional[Tuple[str, int]], rx_cb: Optional[RxCallback],
                 priv: object) -> None:
        self._sock = sock
        self.server_mode = server_mode
        self.local = local
        self.rx_cb = rx_cb
        self.priv = priv
        self.peers: List[Peer] = []
        self.iph_udph_size = iph_udph_overhead(sock.family)

    @classmethod
    def create_server(cls, local: Tuple[str, int], rx_cb: Optional[RxCallback] = None,
                      priv: object = None) -> "OctoiSocket":
        """Bind a server socket to ``(ip, port)``."""
        family, sa_local = _resolve(*local)
        sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.bind(sa_local)
            sock.setblocking(False)
        except OSError:
            sock.close()
            logger.error("Unable to create OCTOI server socket")
            raise
        logger.info("OCTOI server socket at %s", format_address(*local))
        return cls(sock, True, (local[0], local[1]), rx_cb, priv)

    @classmethod
    def create_client(cls, local: Optional[Tuple[str, int]], remote: Tuple[str, int],
                      rx_cb: Optional[RxCallback] = None,
                      priv: object = None) -> "OctoiSocket":
        """Create a socket connected to ``remote``, optionally bound to ``local``."""
        family, sa_remote = _resolve(*remote)
        sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            if local is not None:
                _, sa_local = _resolve(*local)
                sock.bind(sa_local)
            sock.connect(sa_remote)
            sock.setblocking(False)
        except OSError:
            sock.close()
            logger.error("Unable to create OCTOI client socket")
            raise
        logger.info("OCTOI client socket to %s", format_address(*remote))
        self = cls(sock, False, None if local is None else (local[0], local[1]), rx_cb, priv)
        peer = Peer(self, sa_remote, format_address(*remote))
        peer.remote_cfg = (remote[0], remote[1])
        return self

    def __enter__(self) -> "OctoiSocket":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def local_address(self) -> tuple:
        """The address the socket is actually bound to."""
        return self._sock.getsockname()

    def fileno(self) -> int:
        return self._sock.fileno()

    def _send(self, data: bytes, addr: tuple) -> int:
        if self.server_mode:
            return self._sock.sendto(data, addr)
        return self._sock.send(data)

    def handle_readable(self):
        """Read one datagram and hand it to ``rx_cb``.

        Returns what ``rx_cb`` returned, or ``None`` if nothing usable was read.
        """
        try:
            data, addr = self._sock.recvfrom(_RX_BUF_SIZE)
        except (BlockingIOError, InterruptedError):
            return None
        if not data:
            return None
        if len(data) < messages.HEADER_SIZE:
            logger.info("Rx short datagram (%d bytes), dropping", len(data))
            return None

        peer = self.find_peer(addr)
        if peer is None:
            peer = Peer(self, addr, format_address(addr[0], addr[1]))
            logger.info("%s: peer created", peer.name)

        if self.rx_cb is None:
            return None
        return self.rx_cb(peer, data)

    def find_peer(self, addr: tuple) -> Optional[Peer]:
        """Peer whose remote address equals ``addr``, if any."""
        addr = tuple(addr)
        for peer in self.peers:
            if peer.remote == addr:
                return peer
        return None

    def client_peer(self) -> Peer:
        """The single peer of a client socket."""
        if self.server_mode:
            raise RuntimeError("server sockets have no single client peer")
        if len(self.peers) != 1:
            raise RuntimeError(f"client socket has {len(self.peers)} peers")
        return self.peers[0]

    def set_dscp(self, dscp: int) -> None:
        """Set the DSCP bits of outgoing packets, keeping the ECN bits."""
        if not 0 <= dscp <= 63:
            raise ValueError(f"DSCP {dscp} out of range 0..63")
        if self._sock.family == socket.AF_INET6:
            level, opt = socket.IPPROTO_IPV6, _IPV6_TCLASS
        else:
            level, opt = socket.IPPROTO_IP, socket.IP_TOS
        tos = self._sock.getsockopt(level, opt)
        self._sock.setsockopt(level, opt, (tos & 0x03) | (dscp << 2))

    def set_priority(self, priority: int) -> None:
        """Set the socket priority of outgoing packets."""
        if not 0 <= priority <= 255:
            raise ValueError(f"priority {priority} out of range 0..255")
        self._sock.setsockopt(socket.SOL_SOCKET, _SO_PRIORITY, priority)

    def close(self) -> None:
        """Detach all peers and close the socket."""
        for peer in self.peers:
            peer.sock = None
        self.peers.clear()
        if self._sock.fileno() != -1:
            self._sock.close()
            logger.info("OCTOI %s socket destroyed", "server" if self.server_mode else "client")