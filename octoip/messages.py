"""Wire encoding of OCTOI (E1 over IP) messages.

Every message starts with a two-octet header: the protocol version in the
upper and the flags in the lower nibble of the first octet, followed by the
message type.  All multi-octet integers are in network byte order; string
fields are fixed-size and zero-terminated.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Dict

from .line import TDM_HEADER_SIZE

VERSION = 1
HEADER_SIZE = 2

ID_LEN = 32
SOFTWARE_ID_LEN = 32
SOFTWARE_VERSION_LEN = 32
REJECT_MESSAGE_LEN = 64
SERVER_IP_LEN = 46
ERROR_MESSAGE_LEN = 64
RAND_LEN = 16
AUTN_LEN = 16
RES_LEN = 16
AUTS_LEN = 14


class MsgType(enum.IntEnum):
    """OCTOI message types."""

    ECHO_REQ = 0x00
    ECHO_RESP = 0x01
    TDM_DATA = 0x02
    SERVICE_REQ = 0x10
    SERVICE_ACK = 0x11
    SERVICE_REJ = 0x12
    REDIR_CMD = 0x13
    AUTH_REQ = 0x20
    AUTH_RESP = 0x21
    ERROR_IND = 0x30


class Service(enum.IntEnum):
    """Services a client can request."""

    E1_FRAMED = 1


_ECHO = struct.Struct(">H")
_SERVICE = struct.Struct(f">I{ID_LEN}s{SOFTWARE_ID_LEN}s{SOFTWARE_VERSION_LEN}sI")
_SERVICE_REJ = struct.Struct(f">I{REJECT_MESSAGE_LEN}s")
_REDIR = struct.Struct(f">{SERVER_IP_LEN}sH")
_AUTH_REQ = struct.Struct(f">B{RAND_LEN}sB{AUTN_LEN}s")
_AUTH_RESP = struct.Struct(f">B{RES_LEN}sB{AUTS_LEN}s")
_ERROR_IND = struct.Struct(f">I{ERROR_MESSAGE_LEN}s")

#: Minimum payload size (after the header) of each message type.
MIN_PAYLOAD_SIZE: Dict[MsgType, int] = {
    MsgType.ECHO_REQ: _ECHO.size,
    MsgType.ECHO_RESP: _ECHO.size,
    MsgType.TDM_DATA: TDM_HEADER_SIZE,
    MsgType.SERVICE_REQ: _SERVICE.size,
    MsgType.SERVICE_ACK: _SERVICE.size,
    MsgType.SERVICE_REJ: _SERVICE_REJ.size,
    MsgType.REDIR_CMD: _REDIR.size,
    MsgType.AUTH_REQ: _AUTH_REQ.size,
    MsgType.AUTH_RESP: _AUTH_RESP.size,
    MsgType.ERROR_IND: _ERROR_IND.size,
}


@dataclass(frozen=True)
class Header:
    """Common OCTOI message header."""

    version: int
    flags: int
    msg_type: int

    def pack(self) -> bytes:
        if not 0 <= self.version <= 0xF:
            raise ValueError(f"version {self.version} does not fit in 4 bits")
        if not 0 <= self.msg_type <= 0xFF:
            raise ValueError(f"message type {self.msg_type} does not fit in 8 bits")
        return bytes(((self.version << 4) | (self.flags & 0xF), self.msg_type))

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        if len(data) < HEADER_SIZE:
            raise ValueError(f"message too short for header ({len(data)} bytes)")
        return cls(version=data[0] >> 4, flags=data[0] & 0xF, msg_type=data[1])


def _cstr_out(text: str, size: int) -> bytes:
    """Copy ``text`` into a zero-terminated field of ``size`` octets, truncating."""
    raw = text.encode("utf-8")[: size - 1]
    return raw.ljust(size, b"\0")


def _cstr_in(field: bytes) -> str:
    """Read a fixed-size string field, forcing zero-termination."""
    if b"\0" not in field:
        field = field[:-1]
    return field.split(b"\0", 1)[0].decode("utf-8", errors="replace")


def _need(payload: bytes, size: int, what: str) -> None:
    if len(payload) < size:
        raise ValueError(f"truncated {what} ({len(payload)} < {size} bytes)")


def build_message(msg_type: int, flags: int, payload: bytes = b"") -> bytes:
    """Prefix ``payload`` with a header of the current protocol version."""
    return Header(VERSION, flags & 0xF, int(msg_type)).pack() + bytes(payload)


# encoders


def encode_echo(seq_nr: int, data: bytes = b"") -> bytes:
    return _ECHO.pack(seq_nr & 0xFFFF) + bytes(data or b"")


def encode_service_req(
    service: int,
    subscriber_id: str,
    software_id: str,
    software_version: str,
    capability_flags: int,
) -> bytes:
    return _SERVICE.pack(
        service & 0xFFFFFFFF,
        _cstr_out(subscriber_id, ID_LEN),
        _cstr_out(software_id, SOFTWARE_ID_LEN),
        _cstr_out(software_version, SOFTWARE_VERSION_LEN),
        capability_flags & 0xFFFFFFFF,
    )


def encode_service_ack(
    assigned_service: int,
    server_id: str,
    software_id: str,
    software_version: str,
    capability_flags: int,
) -> bytes:
    return _SERVICE.pack(
        assigned_service & 0xFFFFFFFF,
        _cstr_out(server_id, ID_LEN),
        _cstr_out(software_id, SOFTWARE_ID_LEN),
        _cstr_out(software_version, SOFTWARE_VERSION_LEN),
        capability_flags & 0xFFFFFFFF,
    )


def encode_service_rej(rejected_service: int, message: str) -> bytes:
    return _SERVICE_REJ.pack(rejected_service & 0xFFFFFFFF, _cstr_out(message, REJECT_MESSAGE_LEN))


def encode_redir_cmd(server_ip: str, server_port: int) -> bytes:
    return _REDIR.pack(_cstr_out(server_ip, SERVER_IP_LEN), server_port & 0xFFFF)


def encode_auth_req(rand: bytes, autn: bytes) -> bytes:
    rand, autn = bytes(rand), bytes(autn)
    if len(rand) > RAND_LEN:
        raise ValueError(f"RAND longer than {RAND_LEN} bytes")
    if len(autn) > AUTN_LEN:
        raise ValueError(f"AUTN longer than {AUTN_LEN} bytes")
    return _AUTH_REQ.pack(len(rand), rand, len(autn), autn)


def encode_auth_resp(res: bytes, auts: bytes) -> bytes:
    res, auts = bytes(res), bytes(auts)
    if len(res) > RES_LEN:
        raise ValueError(f"RES longer than {RES_LEN} bytes")
    if len(auts) > AUTS_LEN:
        raise ValueError(f"AUTS longer than {AUTS_LEN} bytes")
    return _AUTH_RESP.pack(len(res), res, len(auts), auts)


def encode_error_ind(cause: int, message: str, orig: bytes = b"") -> bytes:
    return _ERROR_IND.pack(cause & 0xFFFFFFFF, _cstr_out(message, ERROR_MESSAGE_LEN)) + bytes(orig)


# decoders


@dataclass(frozen=True)
class EchoPayload:
    seq_nr: int
    data: bytes


@dataclass(frozen=True)
class ServiceRequest:
    requested_service: int
    subscriber_id: str
    software_id: str
    software_version: str
    capability_flags: int


@dataclass(frozen=True)
class ServiceAck:
    assigned_service: int
    server_id: str
    software_id: str
    software_version: str
    capability_flags: int


@dataclass(frozen=True)
class ServiceReject:
    rejected_service: int
    reject_message: str


@dataclass(frozen=True)
class RedirectCommand:
    server_ip: str
    server_port: int


@dataclass(frozen=True)
class AuthRequest:
    rand: bytes
    autn: bytes


@dataclass(frozen=True)
class AuthResponse:
    res: bytes
    auts: bytes


@dataclass(frozen=True)
class ErrorIndication:
    cause: int
    error_message: str
    orig: bytes


def decode_echo(payload: bytes) -> EchoPayload:
    _need(payload, _ECHO.size, "echo")
    (seq_nr,) = _ECHO.unpack_from(payload)
    return EchoPayload(seq_nr, bytes(payload[_ECHO.size:]))


def decode_service_req(payload: bytes) -> ServiceRequest:
    _need(payload, _SERVICE.size, "service request")
    svc, sub, sw_id, sw_ver, caps = _SERVICE.unpack_from(payload)
    return ServiceRequest(svc, _cstr_in(sub), _cstr_in(sw_id), _cstr_in(sw_ver), caps)


def decode_service_ack(payload: bytes) -> ServiceAck:
    _need(payload, _SERVICE.size, "service ack")
    svc, srv, sw_id, sw_ver, caps = _SERVICE.unpack_from(payload)
    return ServiceAck(svc, _cstr_in(srv), _cstr_in(sw_id), _cstr_in(sw_ver), caps)


def decode_service_rej(payload: bytes) -> ServiceReject:
    _need(payload, _SERVICE_REJ.size, "service reject")
    svc, msg = _SERVICE_REJ.unpack_from(payload)
    return ServiceReject(svc, _cstr_in(msg))


def decode_redir_cmd(payload: bytes) -> RedirectCommand:
    _need(payload, _REDIR.size, "redirect command")
    ip, port = _REDIR.unpack_from(payload)
    return RedirectCommand(_cstr_in(ip), port)


def decode_auth_req(payload: bytes) -> AuthRequest:
    _need(payload, _AUTH_REQ.size, "auth request")
    rand_len, rand, autn_len, autn = _AUTH_REQ.unpack_from(payload)
    if rand_len > RAND_LEN or autn_len > AUTN_LEN:
        raise ValueError("invalid IE length in auth request")
    return AuthRequest(rand[:rand_len], autn[:autn_len])


def decode_auth_resp(payload: bytes) -> AuthResponse:
    _need(payload, _AUTH_RESP.size, "auth response")
    res_len, res, auts_len, auts = _AUTH_RESP.unpack_from(payload)
    if res_len > RES_LEN or auts_len > AUTS_LEN:
        raise ValueError("invalid IE length in auth response")
    return AuthResponse(res[:res_len], auts[:auts_len])


def decode_error_ind(payload: bytes) -> ErrorIndication:
    _need(payload, _ERROR_IND.size, "error indication")
    cause, msg = _ERROR_IND.unpack_from(payload)
    return ErrorIndication(cause, _cstr_in(msg), bytes(payload[_ERROR_IND.size:]))