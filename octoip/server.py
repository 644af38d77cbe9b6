"""Server-side OCTOI state machine: one instance per remote client."""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Dict, FrozenSet, Optional

from . import messages
from .config import AccountMode
from .fsm import Event, Message, account_peer_rx, event_for, ts_us_ago, validate_message
from .line import FRAMES_PER_SEC_THRESHOLD, LineCounter, LineStat, TdmRejected
from .messages import Service

logger = logging.getLogger(__name__)

SUPPORTED_CAPABILITIES = 0x00000000
SERVER_ID = "octoip-server"
SOFTWARE_ID = "octoip"
SOFTWARE_VERSION = "1.0.0"

RX_ALIVE_INTERVAL = 3
ECHO_INTERVAL = 10
REJECT_HOLD_TIME = 10


class ServerState(enum.IntEnum):
    """States of the server state machine."""

    INIT = 0
    WAIT_AUTH_VEC = 1
    WAIT_AUTH_RESP = 2
    ACCEPTED = 3
    REJECTED = 4
    REDIRECTED = 5


_IN_EVENTS: Dict[ServerState, FrozenSet[Event]] = {
    ServerState.INIT: frozenset({Event.SRV_RX_SERVICE_REQ}),
    ServerState.WAIT_AUTH_VEC: frozenset({Event.SRV_RX_AUTH_VEC}),
    ServerState.WAIT_AUTH_RESP: frozenset({Event.SRV_RX_AUTH_RESP}),
    ServerState.ACCEPTED: frozenset({Event.SRV_RX_AUTH_RESP, Event.RX_TDM_DATA}),
    ServerState.REJECTED: frozenset({Event.SRV_RX_SERVICE_REQ, Event.SRV_RX_AUTH_RESP}),
    ServerState.REDIRECTED: frozenset({Event.SRV_RX_SERVICE_REQ, Event.SRV_RX_AUTH_RESP}),
}

_OUT_STATES: Dict[ServerState, FrozenSet[ServerState]] = {
    ServerState.INIT: frozenset(
        {ServerState.WAIT_AUTH_VEC, ServerState.ACCEPTED, ServerState.REJECTED}
    ),
    ServerState.WAIT_AUTH_VEC: frozenset({ServerState.WAIT_AUTH_RESP, ServerState.REJECTED}),
    ServerState.WAIT_AUTH_RESP: frozenset(
        {ServerState.ACCEPTED, ServerState.REJECTED, ServerState.REDIRECTED}
    ),
    ServerState.ACCEPTED: frozenset(),
    ServerState.REJECTED: frozenset(),
    ServerState.REDIRECTED: frozenset(),
}

_ALLSTATE_EVENTS = frozenset({Event.RX_ECHO_REQ, Event.RX_ECHO_RESP, Event.RX_ERROR_IND})


class ServerFsm:
    """Tracks one client's service request, acceptance and liveness.

    Timers are driven from outside: while ``alive_timer_active`` the owner
    calls :meth:`rx_alive_check` every few seconds, while
    ``echo_timer_active`` it calls :meth:`send_echo_req`, and once
    ``state_timeout`` seconds have passed in a state it calls :meth:`timeout`.
    ``ops`` may provide ``client_connected(server, peer, account)`` and
    ``peer_disconnected(peer)``.
    """

    def __init__(self, peer, server, ops=None) -> None:
        self.peer = peer
        self.server = server
        self.ops = ops
        self.id: Optional[str] = None
        self.state = ServerState.INIT
        self.state_timeout = 0
        self.service = 0
        self.capability_flags = 0
        self.remote: Optional[messages.ServiceRequest] = None
        self.account = None
        self.app_priv: object = None
        self.rej_str: Optional[str] = None
        self.alive_timer_active = False
        self.echo_timer_active = False
        self.last_echo_tx_ts = 0.0
        self.last_echo_tx_seq = 0
        self.terminated = False
        self.term_cause: Optional[str] = None

    def __repr__(self) -> str:
        return f"ServerFsm({self.id or self.peer.name!r}, {self.state.name})"

    # state handling

    def _change_state(self, new_state: ServerState, timeout: int) -> bool:
        if new_state not in _OUT_STATES[self.state]:
            logger.error(
                "%r: transition to state %s not permitted", self, new_state.name
            )
            return False
        if self.state is ServerState.ACCEPTED:
            self._on_leave_accepted()
        self.state = new_state
        self.state_timeout = timeout
        if new_state is ServerState.ACCEPTED:
            self._on_enter_accepted()
        return True

    def dispatch(self, event: Event, msg: Optional[Message] = None) -> bool:
        """Feed an event; returns False if the current state does not accept it."""
        event = Event(event)
        if self.terminated:
            logger.error("%r: event %s after termination", self, event.event_name)
            return False
        if event in _ALLSTATE_EVENTS:
            self._allstate(event, msg)
            return True
        if event not in _IN_EVENTS[self.state]:
            logger.error("%r: event %s not permitted", self, event.event_name)
            return False
        handler: Callable[[Event, Optional[Message]], None] = {
            ServerState.INIT: self._st_init,
            ServerState.WAIT_AUTH_VEC: self._st_wait_auth_vec,
            ServerState.WAIT_AUTH_RESP: self._st_wait_auth_resp,
            ServerState.ACCEPTED: self._st_accepted,
            ServerState.REJECTED: self._st_rejected,
            ServerState.REDIRECTED: self._st_redirected,
        }[self.state]
        handler(event, msg)
        return True

    def _reject(self, text: str) -> None:
        self.rej_str = text
        self.peer.tx_service_rej(self.service, text)
        self._change_state(ServerState.REJECTED, REJECT_HOLD_TIME)

    def _tx_ack(self) -> None:
        self.peer.tx_service_ack(
            self.service, SERVER_ID, SOFTWARE_ID, SOFTWARE_VERSION, self.capability_flags
        )

    def _st_init(self, event: Event, msg: Optional[Message]) -> None:
        req = messages.decode_service_req(msg.payload)
        service = req.requested_service
        logger.info(
            "%r: Rx SERVICE REQ (service=%u, subscriber='%s', software='%s'/'%s', "
            "capabilities=0x%08x)", self, service, req.subscriber_id, req.software_id,
            req.software_version, req.capability_flags,
        )
        if service != Service.E1_FRAMED:
            self.rej_str = "Unsupported service"
            self._change_state(ServerState.REJECTED, 0)
            self.peer.tx_service_rej(service, self.rej_str)
            return

        self.service = service
        self.id = req.subscriber_id
        self.remote = req
        self.capability_flags = req.capability_flags & SUPPORTED_CAPABILITIES

        acc = self.server.find_account(req.subscriber_id) if self.server is not None else None
        if acc is None:
            logger.info("%r: Could not find user account %s, rejecting", self, req.subscriber_id)
            self._reject("Unknown user")
            return
        self.account = acc

        if acc.mode in (AccountMode.ICE1USB, AccountMode.DAHDI_TRUNKDEV):
            connect = getattr(self.ops, "client_connected", None)
            self.app_priv = connect(self.server, self.peer, acc) if connect else None
            if not self.app_priv:
                logger.info("%r: Could not find E1 line for account %s, rejecting",
                            self, acc.user_id)
                self._reject("No line for user")
                return
            self.peer.name = acc.user_id
            self.peer.ensure_line().set_name(acc.user_id)
            self._change_state(ServerState.ACCEPTED, 0)
            self._tx_ack()
        elif acc.mode is AccountMode.REDIRECT:
            self.peer.tx_redir_cmd(acc.redirect_ip, acc.redirect_port)
            self._change_state(ServerState.REDIRECTED, REJECT_HOLD_TIME)
        else:
            logger.info("%r: User account %s has mode 'none', rejecting", self, acc.user_id)
            self._reject("Unsupported mode for user")

    def _st_wait_auth_vec(self, event: Event, msg: Optional[Message]) -> None:
        logger.debug("%r: authentication vector received, ignoring", self)

    def _st_wait_auth_resp(self, event: Event, msg: Optional[Message]) -> None:
        raise RuntimeError("authentication is not supported by this server")

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
        if event is Event.SRV_RX_AUTH_RESP:
            # retransmission from the client side: re-send the ack
            self._tx_ack()
            self.alive_timer_active = True
            return
        self.peer.last_rx_tdm = int(time.monotonic())
        if not self.peer.tdm_permitted:
            return
        try:
            self.peer.iline.receive_tdm(msg.payload)
        except TdmRejected as exc:
            logger.info("%s: %s", self.peer.name, exc)

    def _st_rejected(self, event: Event, msg: Optional[Message]) -> None:
        self.peer.tx_service_rej(self.service, self.rej_str or "")

    def _st_redirected(self, event: Event, msg: Optional[Message]) -> None:
        self.peer.tx_redir_cmd(self.account.redirect_ip, self.account.redirect_port)

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
        """State timer expired; returns True if the instance was terminated."""
        if self.state in (ServerState.REJECTED, ServerState.REDIRECTED):
            self.terminate("timeout")
            return True
        return False

    def rx_alive_check(self, now: Optional[float] = None) -> bool:
        """Periodic liveness check; returns False once the peer was dropped."""
        if self.terminated or not self.alive_timer_active:
            return False
        if now is None:
            now = time.monotonic()
        if int(now) - self.peer.last_rx_tdm > RX_ALIVE_INTERVAL:
            logger.info("%r: No TDM data received for >= 3 seconds, declaring peer dead", self)
            self.terminate("timeout")
            return False
        line = self.peer.iline
        if line is not None:
            if line.rate_1s(LineCounter.UNDERRUN) > FRAMES_PER_SEC_THRESHOLD:
                logger.error("%r: More than %u RIFO underruns per second: Peer clock is too "
                             "slow. Disconnecting.", self, FRAMES_PER_SEC_THRESHOLD)
                self.terminate("error")
                return False
            if line.rate_1s(LineCounter.E1T_OVERFLOW) > FRAMES_PER_SEC_THRESHOLD:
                logger.error("%r: More than %u RIFO overflows per second: Peer clock is too "
                             "fast. Disconnecting.", self, FRAMES_PER_SEC_THRESHOLD)
                self.terminate("error")
                return False
        return True

    def send_echo_req(self) -> int:
        """Send the next ECHO_REQ; returns its sequence number."""
        self.last_echo_tx_ts = time.monotonic()
        self.last_echo_tx_seq = (self.last_echo_tx_seq + 1) & 0xFFFF
        self.peer.tx_echo_req(self.last_echo_tx_seq)
        logger.debug("%r: Tx OCTOI ECHO_REQ (seq=%u)", self, self.last_echo_tx_seq)
        return self.last_echo_tx_seq

    def terminate(self, cause: str = "regular") -> None:
        """Stop the instance, notify the application and destroy the peer."""
        if self.terminated:
            return
        self.terminated = True
        self.term_cause = cause
        self.alive_timer_active = False
        self.echo_timer_active = False
        disconnected = getattr(self.ops, "peer_disconnected", None)
        if disconnected is not None:
            disconnected(self.peer)
        if self.peer.priv is self:
            self.peer.priv = None
        self.peer.destroy()


def server_rx_cb(peer, data: bytes) -> bool:
    """Handle one datagram received from ``peer`` on a server socket.

    Creates the peer's state machine on first contact, using the socket's
    ``priv`` as server configuration and its ``ops`` attribute, if any, as
    application callbacks.  Raises :class:`~octoip.fsm.InvalidMessage` for
    malformed datagrams; returns whether the state machine accepted the event.
    """
    fsm = peer.priv
    if fsm is None:
        server = peer.sock.priv if peer.sock is not None else None
        fsm = ServerFsm(peer, server, getattr(server, "ops", None))
        peer.priv = fsm
    peer.ensure_line()
    account_peer_rx(peer, len(data))
    msg = validate_message(data)
    event = event_for(msg.msg_type)
    if event is None:
        logger.info("Rx Unknown OCTOI message type 0x%02x", msg.header.msg_type)
        return False
    return fsm.dispatch(event, msg)