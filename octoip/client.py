"""Client side of OCTOI: the client state machine, client settings and the daemon."""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from . import messages
from .config import Account, AccountMode, ConfigError, ServerConfig, _check_address, _check_range
from .fsm import Event, Message, account_peer_rx, event_for, ts_us_ago, validate_message
from .line import FRAMES_PER_SEC_THRESHOLD, LineCounter, LineStat, TdmRejected
from .messages import Service
from .server import SOFTWARE_ID, SOFTWARE_VERSION, server_rx_cb
from .sock import OctoiSocket

logger = logging.getLogger(__name__)

RX_ALIVE_INTERVAL = 3
ECHO_INTERVAL = 10
RETRANSMIT_INTERVAL = 10
RECONNECT_DELAY = 10


class ClientState(enum.IntEnum):
    """States of the client state machine."""

    INIT = 0
    SVC_REQ_SENT = 1
    ACCEPTED = 2
    REJECTED = 3
    REDIRECTED = 4
    WAIT_RECONNECT = 5


_IN_EVENTS: Dict[ClientState, FrozenSet[Event]] = {
    ClientState.INIT: frozenset({Event.CLNT_REQUEST_SERVICE}),
    ClientState.SVC_REQ_SENT: frozenset({
        Event.CLNT_RX_AUTH_REQ, Event.CLNT_RX_SVC_ACK,
        Event.CLNT_RX_SVC_REJ, Event.CLNT_RX_REDIR_CMD,
    }),
    ClientState.ACCEPTED: frozenset({Event.CLNT_RX_AUTH_REQ, Event.RX_TDM_DATA}),
    ClientState.REJECTED: frozenset(),
    ClientState.REDIRECTED: frozenset(),
    ClientState.WAIT_RECONNECT: frozenset(),
}

_OUT_STATES: Dict[ClientState, FrozenSet[ClientState]] = {
    ClientState.INIT: frozenset({ClientState.SVC_REQ_SENT}),
    ClientState.SVC_REQ_SENT: frozenset({
        ClientState.SVC_REQ_SENT, ClientState.ACCEPTED,
        ClientState.REJECTED, ClientState.REDIRECTED,
    }),
    ClientState.ACCEPTED: frozenset({ClientState.INIT, ClientState.WAIT_RECONNECT}),
    ClientState.REJECTED: frozenset(),
    ClientState.REDIRECTED: frozenset({ClientState.SVC_REQ_SENT}),
    ClientState.WAIT_RECONNECT: frozenset({ClientState.INIT}),
}

_ALLSTATE_EVENTS = frozenset({Event.RX_ECHO_REQ, Event.RX_ECHO_RESP, Event.RX_ERROR_IND})


class ClientFsm:
    """Requests service from an OCTOI server and tracks the connection.

    Timers are driven from outside: while ``alive_timer_active`` the owner
    calls :meth:`rx_alive_check` every few seconds, while
    ``echo_timer_active`` it calls :meth:`send_echo_req`, and once
    ``state_timeout`` seconds (if non-zero) have passed in a state it calls
    :meth:`timeout`.
    """

    def __init__(self, peer, account: Optional[Account] = None) -> None:
        self.peer = peer
        self.account = account
        self.id: Optional[str] = account.user_id if account is not None else None
        self.state = ClientState.INIT
        self.state_timeout = 0
        self.service = Service.E1_FRAMED
        self.capability_flags = 0
        self.remote: Optional[messages.ServiceAck] = None
        self.alive_timer_active = False
        self.echo_timer_active = False
        self.last_echo_tx_ts = 0.0
        self.last_echo_tx_seq = 0

    def __repr__(self) -> str:
        return f"ClientFsm({self.id or self.peer.name!r}, {self.state.name})"

    # state handling

    def _change_state(self, new_state: ClientState, timeout: int) -> bool:
        if new_state not in _OUT_STATES[self.state]:
            logger.error("%r: transition to state %s not permitted", self, new_state.name)
            return False
        if self.state is ClientState.ACCEPTED:
            self._on_leave_accepted()
        self.state = new_state
        self.state_timeout = timeout
        if new_state is ClientState.ACCEPTED:
            self._on_enter_accepted()
        elif new_state is ClientState.REJECTED:
            logger.error("%r: Server has rejected service, will not retry until "
                         "program restart", self)
        return True

    def request_service(self) -> bool:
        """Start (or restart) the service request towards the server."""
        return self.dispatch(Event.CLNT_REQUEST_SERVICE)

    def dispatch(self, event: Event, msg: Optional[Message] = None) -> bool:
        """Feed an event; returns False if the current state does not accept it."""
        event = Event(event)
        if event in _ALLSTATE_EVENTS:
            self._allstate(event, msg)
            return True
        if event not in _IN_EVENTS[self.state]:
            logger.error("%r: event %s not permitted", self, event.event_name)
            return False
        handler: Callable[[Event, Optional[Message]], None] = {
            ClientState.INIT: self._st_init,
            ClientState.SVC_REQ_SENT: self._st_svc_req_sent,
            ClientState.ACCEPTED: self._st_accepted,
        }[self.state]
        handler(event, msg)
        return True

    def _tx_service_req(self) -> None:
        if self.account is None:
            raise RuntimeError(f"{self!r}: no account to request service for")
        self.peer.tx_service_req(self.service, self.account.user_id, SOFTWARE_ID,
                                 SOFTWARE_VERSION, self.capability_flags)

    def _st_init(self, event: Event, msg: Optional[Message]) -> None:
        self._tx_service_req()
        self._change_state(ClientState.SVC_REQ_SENT, RETRANSMIT_INTERVAL)

    def _st_svc_req_sent(self, event: Event, msg: Optional[Message]) -> None:
        if event is Event.CLNT_RX_AUTH_REQ:
            logger.info("%r: Rx AUTH_REQ, but no authentication supported yet!", self)
        elif event is Event.CLNT_RX_SVC_ACK:
            ack = messages.decode_service_ack(msg.payload)
            self.remote = ack
            logger.info("%r: Rx SERVICE_ACK (service=%u, server_id='%s', software_id='%s', "
                        "software_version='%s')", self, ack.assigned_service, ack.server_id,
                        ack.software_id, ack.software_version)
            self._change_state(ClientState.ACCEPTED, 0)
        elif event is Event.CLNT_RX_SVC_REJ:
            rej = messages.decode_service_rej(msg.payload)
            logger.info("%r: Rx SERVICE_REJ (service=%u, message='%s')",
                        self, rej.rejected_service, rej.reject_message)
            self._change_state(ClientState.REJECTED, 0)
        else:
            logger.info("%r: Rx REDIR_CMD, but not yet supported", self)
            self._change_state(ClientState.REDIRECTED, 0)

    def _on_enter_accepted(self) -> None:
        line = self.peer.ensure_line()
        acc = self.account
        line.configure(acc.batching_factor, acc.prefill_frame_count,
                       acc.buffer_reset_percent, acc.force_send_all_ts)
        line.reset()
        line.add_counter(LineCounter.CONNECT_ACCEPT, 1)
        self.peer.tdm_permitted = True
        self.alive_timer_active = True
        self.echo_timer_active = True

    def _on_leave_accepted(self) -> None:
        self.echo_timer_active = False
        self.alive_timer_active = False
        self.peer.tdm_permitted = False

    def _st_accepted(self, event: Event, msg: Optional[Message]) -> None:
        if event is Event.CLNT_RX_AUTH_REQ:
            logger.info("%r: Rx AUTH_REQ, but no authentication supported yet!", self)
            return
        self.peer.last_rx_tdm = int(time.monotonic())
        if not self.peer.tdm_permitted or self.peer.iline is None:
            return
        try:
            self.peer.iline.receive_tdm(msg.payload)
        except TdmRejected as exc:
            logger.info("%s: %s", self.peer.name, exc)

    def _allstate(self, event: Event, msg: Optional[Message]) -> None:
        if event is Event.RX_ECHO_REQ:
            echo = messages.decode_echo(msg.payload)
            logger.debug("%r: Rx OCTOI ECHO_REQ (seq=%u)", self, echo.seq_nr)
            self.peer.tx_echo_resp(echo.seq_nr, echo.data)
        elif event is Event.RX_ECHO_RESP:
            echo = messages.decode_echo(msg.payload)
            if echo.seq_nr != self.last_echo_tx_seq:
                logger.info("%r: Rx OCTOI ECHO RESP (seq=%u) doesn't match our last "
                            "request (seq=%u)", self, echo.seq_nr, self.last_echo_tx_seq)
                return
            rtt_us = ts_us_ago(self.last_echo_tx_ts)
            if self.peer.iline is not None:
                self.peer.iline.set_stat(LineStat.RTT, rtt_us)
            logger.info("%r: Rx OCTOI ECHO_RESP (seq=%u, rtt=%d)", self, echo.seq_nr, rtt_us)
        else:
            err = messages.decode_error_ind(msg.payload)
            logger.error("%r: Rx OCTOI ERROR IND (cause=0x%08x, msg=%s)",
                         self, err.cause, err.error_message)

    # timers

    def timeout(self) -> bool:
        """State timer expired; returns True if anything was done."""
        if self.state is ClientState.SVC_REQ_SENT:
            logger.info("%r: Re-transmitting SERVICE_REQ", self)
            self._tx_service_req()
            self._change_state(ClientState.SVC_REQ_SENT, RETRANSMIT_INTERVAL)
            return True
        if self.state is ClientState.WAIT_RECONNECT:
            logger.info("%r: Re-starting connection", self)
            self._change_state(ClientState.INIT, 0)
            self.request_service()
            return True
        return False

    def rx_alive_check(self, now: Optional[float] = None) -> bool:
        """Periodic liveness check; returns False once the connection was dropped."""
        if not self.alive_timer_active:
            return False
        if now is None:
            now = time.monotonic()
        if int(now) - self.peer.last_rx_tdm > RX_ALIVE_INTERVAL:
            logger.info("%r: No TDM data received for >= 3 seconds, declaring peer dead", self)
            self._change_state(ClientState.INIT, 0)
            self.request_service()
            return False
        line = self.peer.iline
        if line is not None:
            if line.rate_1s(LineCounter.UNDERRUN) > FRAMES_PER_SEC_THRESHOLD:
                logger.error("%r: More than %u RIFO underruns per second: Your clock appears "
                             "to be too fast. Disconnecting.", self, FRAMES_PER_SEC_THRESHOLD)
                self._change_state(ClientState.WAIT_RECONNECT, RECONNECT_DELAY)
                return False
            if line.rate_1s(LineCounter.E1T_OVERFLOW) > FRAMES_PER_SEC_THRESHOLD:
                logger.error("%r: More than %u RIFO overflows per second: Your clock appears "
                             "to be too slow. Disconnecting.", self, FRAMES_PER_SEC_THRESHOLD)
                self._change_state(ClientState.WAIT_RECONNECT, RECONNECT_DELAY)
                return False
        return True

    def send_echo_req(self) -> int:
        """Send the next ECHO_REQ; returns its sequence number."""
        self.last_echo_tx_ts = time.monotonic()
        self.last_echo_tx_seq = (self.last_echo_tx_seq + 1) & 0xFFFF
        self.peer.tx_echo_req(self.last_echo_tx_seq)
        logger.debug("%r: Tx OCTOI ECHO_REQ (seq=%u)", self, self.last_echo_tx_seq)
        return self.last_echo_tx_seq


def client_rx_cb(peer, data: bytes) -> bool:
    """Handle one datagram received on a client socket.

    Raises :class:`~octoip.fsm.InvalidMessage` for malformed datagrams;
    returns whether the state machine accepted the event.
    """
    fsm = peer.priv
    if fsm is None:
        fsm = ClientFsm(peer, None)
        peer.priv = fsm
    account_peer_rx(peer, len(data))
    msg = validate_message(data)
    event = event_for(msg.msg_type)
    if event is None:
        logger.info("Rx Unknown OCTOI message type 0x%02x", msg.header.msg_type)
        return False
    return fsm.dispatch(event, msg)


class ClientConfig:
    """Settings of one OCTOI client connection, its account and socket."""

    def __init__(self, remote_ip: str, remote_port: int) -> None:
        self.remote: Tuple[str, int] = _check_address(remote_ip, remote_port)
        self.local: Optional[Tuple[str, int]] = None
        self.dscp = 0
        self.priority = 0
        self.account_cfg: Optional[Account] = None
        self.sock: Optional[OctoiSocket] = None

    def __repr__(self) -> str:
        return f"ClientConfig({self.remote[0]!r}, {self.remote[1]})"

    @property
    def peer(self):
        """The single peer of the client socket, if the socket exists."""
        return self.sock.client_peer() if self.sock is not None else None

    def account(self, user_id: str) -> Account:
        """Return the client's account, creating it or renaming it to ``user_id``."""
        if self.account_cfg is None:
            self.account_cfg = Account(user_id, mode=AccountMode.ICE1USB)
        else:
            self.account_cfg.user_id = user_id
        return self.account_cfg

    @staticmethod
    def _apply(setter: Callable[[int], None], value: int, what: str) -> None:
        try:
            setter(value)
        except OSError as exc:
            raise ConfigError(f"failed to set {what} on socket: {exc}") from exc

    def set_local(self, ip: str, port: int) -> None:
        """Create (or re-create) the socket, bound locally and connected to the remote."""
        self.local = _check_address(ip, port)
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        try:
            self.sock = OctoiSocket.create_client(self.local, self.remote, client_rx_cb, self)
        except OSError as exc:
            raise ConfigError(f"failed to create/bind socket: {exc}") from exc
        if self.dscp:
            self._apply(self.sock.set_dscp, self.dscp, "DSCP")
        if self.priority:
            self._apply(self.sock.set_priority, self.priority, "priority")

    def set_dscp(self, dscp: int) -> None:
        self.dscp = _check_range("DSCP", dscp, 0, 63)
        if self.sock is not None:
            self._apply(self.sock.set_dscp, self.dscp, "DSCP")

    def set_priority(self, priority: int) -> None:
        self.priority = _check_range("priority", priority, 0, 255)
        if self.sock is not None:
            self._apply(self.sock.set_priority, self.priority, "priority")

    def start(self) -> ClientFsm:
        """Start requesting service from the server; returns the state machine."""
        if self.sock is None:
            raise ConfigError("client has no socket; configure local-bind first")
        if self.account_cfg is None:
            raise ConfigError("client has no account configured")
        peer = self.sock.client_peer()
        if peer.priv is None:
            peer.priv = ClientFsm(peer, self.account_cfg)
        fsm = peer.priv
        if fsm.account is None:
            fsm.account = self.account_cfg
            fsm.id = self.account_cfg.user_id
        peer.ensure_line()
        fsm.request_service()
        return fsm

    def config_lines(self) -> List[str]:
        lines = [f"octoi-client {self.remote[0]} {self.remote[1]}"]
        if self.local is not None and self.local[0]:
            lines.append(f" local-bind {self.local[0]} {self.local[1]}")
        if self.dscp:
            lines.append(f" ip-dscp {self.dscp}")
        if self.priority:
            lines.append(f" socket-priority {self.priority}")
        if self.account_cfg is not None:
            lines.extend(self.account_cfg.config_lines())
        return lines


class OctoiDaemon:
    """Holds the server configuration, all clients and the application callbacks."""

    def __init__(self, ops=None) -> None:
        self.ops = ops
        self.server: Optional[ServerConfig] = None
        self.clients: List[ClientConfig] = []

    def server_config(self) -> ServerConfig:
        """Return the server configuration, creating it on first use."""
        if self.server is None:
            self.server = ServerConfig(rx_cb=server_rx_cb)
            self.server.ops = self.ops
        return self.server

    def find_client(self, ip: str, port: int) -> Optional[ClientConfig]:
        return next((c for c in self.clients if c.remote == (ip, port)), None)

    def client(self, ip: str, port: int) -> ClientConfig:
        """Return the client for remote ``(ip, port)``, creating it if needed."""
        clnt = self.find_client(ip, port)
        if clnt is None:
            clnt = ClientConfig(ip, port)
            self.clients.append(clnt)
        return clnt

    def client_for_account(self, account: Account) -> Optional[ClientConfig]:
        return next((c for c in self.clients if c.account_cfg is account), None)

    def config_lines(self) -> List[str]:
        lines: List[str] = []
        if self.server is not None:
            lines.extend(self.server.config_lines())
        for clnt in self.clients:
            lines.extend(clnt.config_lines())
        return lines