"""Validation and dispatch helpers shared by the OCTOI state machines."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from . import messages
from .line import LineCounter, LineStat
from .messages import HEADER_SIZE, MIN_PAYLOAD_SIZE, VERSION, Header, MsgType
from .sock import format_address

logger = logging.getLogger(__name__)

INT32_MAX = 2**31 - 1


class Event(enum.IntEnum):
    """Events fed into the server and client state machines."""

    # common for server and client
    RX_TDM_DATA = 0
    RX_ECHO_REQ = 1
    RX_ECHO_RESP = 2
    RX_ERROR_IND = 3
    # server side only
    SRV_RX_SERVICE_REQ = 4
    SRV_RX_AUTH_VEC = 5
    SRV_RX_AUTH_RESP = 6
    # client side only
    CLNT_REQUEST_SERVICE = 7
    CLNT_RX_AUTH_REQ = 8
    CLNT_RX_SVC_ACK = 9
    CLNT_RX_SVC_REJ = 10
    CLNT_RX_REDIR_CMD = 11

    @property
    def event_name(self) -> str:
        return _EVENT_NAMES[self]


_EVENT_NAMES: Dict[Event, str] = {
    Event.RX_TDM_DATA: "RX_TDM_DATA",
    Event.RX_ECHO_REQ: "RX_ECHO_REQ",
    Event.RX_ECHO_RESP: "RX_ECHO_RESP",
    Event.RX_ERROR_IND: "RX_ERROR_IND",
    Event.SRV_RX_SERVICE_REQ: "RX_SERVICE_REQ",
    Event.SRV_RX_AUTH_VEC: "RX_AUTH_VEC",
    Event.SRV_RX_AUTH_RESP: "RX_AUTH_RESP",
    Event.CLNT_REQUEST_SERVICE: "REQUEST_SERVICE",
    Event.CLNT_RX_AUTH_REQ: "RX_AUTH_REQ",
    Event.CLNT_RX_SVC_ACK: "RX_SERVICE_ACK",
    Event.CLNT_RX_SVC_REJ: "RX_SERVICE_REJ",
    Event.CLNT_RX_REDIR_CMD: "RX_REDIR_CMD",
}

_EVENT_FOR_TYPE: Dict[MsgType, Event] = {
    MsgType.TDM_DATA: Event.RX_TDM_DATA,
    MsgType.ECHO_REQ: Event.RX_ECHO_REQ,
    MsgType.ECHO_RESP: Event.RX_ECHO_RESP,
    MsgType.ERROR_IND: Event.RX_ERROR_IND,
    MsgType.SERVICE_REQ: Event.SRV_RX_SERVICE_REQ,
    MsgType.AUTH_RESP: Event.SRV_RX_AUTH_RESP,
    MsgType.SERVICE_ACK: Event.CLNT_RX_SVC_ACK,
    MsgType.SERVICE_REJ: Event.CLNT_RX_SVC_REJ,
    MsgType.REDIR_CMD: Event.CLNT_RX_REDIR_CMD,
    MsgType.AUTH_REQ: Event.CLNT_RX_AUTH_REQ,
}


class InvalidMessage(ValueError):
    """A received datagram is not a consistent OCTOI message."""


@dataclass(frozen=True)
class Message:
    """A validated OCTOI message: its header and the payload after it."""

    header: Header
    payload: bytes

    @property
    def msg_type(self) -> MsgType:
        return MsgType(self.header.msg_type)


def ts_us_ago(old_ts: float, now: Optional[float] = None) -> int:
    """Microseconds elapsed since monotonic time ``old_ts`` (seconds), capped at INT32_MAX."""
    if now is None:
        now = time.monotonic()
    diff_ns = round((now - old_ts) * 1_000_000_000)
    sec, nsec = divmod(diff_ns, 1_000_000_000)
    if sec > INT32_MAX // 1_000_000:
        return INT32_MAX
    return sec * 1_000_000 + nsec // 1000


def validate_message(data: bytes) -> Message:
    """Check header, version, type and minimum length of a received message."""
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise InvalidMessage(f"Rx short message ({len(data)} < {HEADER_SIZE})")
    header = Header.unpack(data)
    if header.version != VERSION:
        raise InvalidMessage(f"Rx unsupported version ({header.version} != {VERSION})")
    try:
        msg_type = MsgType(header.msg_type)
    except ValueError as exc:
        raise InvalidMessage(
            f"Rx unknown OCTOI message type 0x{header.msg_type:02x}"
        ) from exc

    payload = data[HEADER_SIZE:]
    if len(payload) < MIN_PAYLOAD_SIZE[msg_type]:
        raise InvalidMessage(f"Rx truncated OCTOI message 0x{msg_type:02x}")

    decoder = {
        MsgType.AUTH_REQ: messages.decode_auth_req,
        MsgType.AUTH_RESP: messages.decode_auth_resp,
    }.get(msg_type)
    if decoder is not None:
        try:
            decoder(payload)
        except ValueError as exc:
            raise InvalidMessage(
                f"Rx invalid IE length in OCTOI message 0x{msg_type:02x}"
            ) from exc

    return Message(header, payload)


def event_for(msg_type: int) -> Optional[Event]:
    """The state machine event a message type is dispatched as, if any."""
    try:
        return _EVENT_FOR_TYPE.get(MsgType(msg_type))
    except ValueError:
        return None


def account_peer_rx(peer, size: int) -> bool:
    """Count one received packet of ``size`` bytes on the peer's line.

    Returns False if the peer has no line to count on.
    """
    line = peer.iline
    if line is None:
        return False
    overhead = peer.sock.iph_udph_size if peer.sock is not None else line.iph_udph_size
    line.add_counter(LineCounter.RX_PACKETS, 1)
    line.add_counter(LineCounter.RX_BYTES, overhead + size)
    return True


def show_socket(sock) -> str:
    """Status report of a socket, its peers and their line counters."""
    local = sock.local if sock.local is not None else ("", 0)
    role = "Server" if sock.server_mode else "Client"
    lines = [f"OCTOI {role} Socket on {format_address(*local)}"]
    for peer in sock.peers:
        state = getattr(peer.priv, "state", None)
        state_name = state.name if state is not None else "NULL"
        lines.append(
            f" Peer '{peer.name}', Remote {format_address(*peer.remote_cfg)}, "
            f"State {state_name}"
        )
        line = peer.iline
        if line is not None:
            lines.extend(f"  {c.counter_name}: {line.counter(c)}" for c in LineCounter)
            lines.extend(f"  {s.stat_name}: {line.stat(s)}" for s in LineStat)
    return "\n".join(lines)