"""Configuration of the OCTOI server and of user accounts."""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from .line import DEFAULT_BATCHING_FACTOR, DEFAULT_PREFILL_FRAME_COUNT
from .sock import OctoiSocket

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """A configuration command could not be applied."""


class AccountMode(enum.Enum):
    """Operational mode of an account; the value is its configuration name."""

    NONE = "none"
    ICE1USB = "ice1usb"
    REDIRECT = "redirect"
    DAHDI_TRUNKDEV = "dahdi-trunkdev"


def _check_range(what: str, value: int, low: int, high: int) -> int:
    value = int(value)
    if not low <= value <= high:
        raise ConfigError(f"{what} {value} out of range {low}..{high}")
    return value


def _check_address(ip: str, port: int) -> Tuple[str, int]:
    try:
        ipaddress.ip_address(ip)
    except ValueError as exc:
        raise ConfigError(f"sockaddr Error: invalid address {ip!r}") from exc
    return ip, _check_range("port", port, 0, 65535)


@dataclass
class Account:
    """A user account: which local E1 line (or redirect) a subscriber maps to."""

    user_id: str
    mode: AccountMode = AccountMode.NONE
    batching_factor: int = DEFAULT_BATCHING_FACTOR
    prefill_frame_count: int = DEFAULT_PREFILL_FRAME_COUNT
    buffer_reset_percent: int = 0
    force_send_all_ts: bool = False
    usb_serial: Optional[str] = None
    line_nr: int = 0
    redirect_ip: str = ""
    redirect_port: int = 0
    trunkdev_name: Optional[str] = None
    trunkdev_line_nr: int = 0

    def _clear_mode_data(self) -> None:
        self.usb_serial = None
        self.line_nr = 0
        self.redirect_ip = ""
        self.redirect_port = 0
        self.trunkdev_name = None
        self.trunkdev_line_nr = 0

    def set_mode(self, mode: Union[AccountMode, str]) -> None:
        """Switch mode; all mode-specific settings are dropped."""
        try:
            new_mode = AccountMode(mode)
        except ValueError as exc:
            raise ConfigError(f"unknown account mode {mode!r}") from exc
        if new_mode is AccountMode.NONE:
            raise ConfigError("mode must be one of ice1usb, redirect, dahdi-trunkdev")
        self._clear_mode_data()
        if new_mode is AccountMode.DAHDI_TRUNKDEV:
            raise ConfigError("This build wasn't compiled with dahdi-trunkdev support")
        self.mode = new_mode

    def _require_mode(self, mode: AccountMode) -> None:
        if self.mode is not mode:
            label = "icE1usb" if mode is AccountMode.ICE1USB else mode.value
            raise ConfigError(f"Error: Not in {label} mode!")

    def set_ice1usb_serial(self, serial: str) -> None:
        self._require_mode(AccountMode.ICE1USB)
        self.usb_serial = serial

    def set_ice1usb_line(self, line_nr: int) -> None:
        self._require_mode(AccountMode.ICE1USB)
        self.line_nr = _check_range("line number", line_nr, 0, 1)

    def set_redirect(self, ip: str, port: int) -> None:
        self._require_mode(AccountMode.REDIRECT)
        self.redirect_ip, self.redirect_port = _check_address(ip, port)

    def set_batching_factor(self, value: int) -> None:
        self.batching_factor = _check_range("batching factor", value, 1, 256)

    def set_prefill_frame_count(self, value: int) -> None:
        self.prefill_frame_count = _check_range("prefill frame count", value, 0, 900)

    def set_buffer_reset(self, value: int) -> None:
        self.buffer_reset_percent = _check_range("buffer reset percentage", value, 0, 100)

    def show(self, prefix: str = "") -> str:
        """One-line status summary."""
        return (
            f"{prefix}Account '{self.user_id}': Mode={self.mode.value}, "
            f"Batching={self.batching_factor}, Prefill={self.prefill_frame_count}"
        )

    def config_lines(self) -> List[str]:
        """The account's configuration, as written to a config file."""
        lines = [f" account {self.user_id}", f"  mode {self.mode.value}"]
        if self.batching_factor != DEFAULT_BATCHING_FACTOR:
            lines.append(f"  batching-factor {self.batching_factor}")
        if self.force_send_all_ts:
            lines.append("  force-all-ts")
        if self.prefill_frame_count != DEFAULT_PREFILL_FRAME_COUNT:
            lines.append(f"  prefill-frame-count {self.prefill_frame_count}")

        if self.mode is AccountMode.ICE1USB:
            if self.usb_serial:
                lines.append(f"  ice1usb serial-number {self.usb_serial}")
            lines.append(f"  ice1usb line-number {self.line_nr}")
        elif self.mode is AccountMode.REDIRECT:
            lines.append(f"  redirect {self.redirect_ip} {self.redirect_port}")
        return lines


@dataclass
class ServerConfig:
    """OCTOI server settings, its accounts and its bound socket."""

    local: Optional[Tuple[str, int]] = None
    dscp: int = 0
    priority: int = 0
    accounts: List[Account] = field(default_factory=list)
    rx_cb: Optional[Callable] = None
    sock: Optional[OctoiSocket] = None

    def find_account(self, user_id: str) -> Optional[Account]:
        return next((acc for acc in self.accounts if acc.user_id == user_id), None)

    def account(self, user_id: str) -> Account:
        """Return the account for ``user_id``, creating it if needed."""
        acc = self.find_account(user_id)
        if acc is None:
            acc = Account(user_id)
            self.accounts.append(acc)
        return acc

    def set_local(self, ip: str, port: int) -> None:
        """Bind (or re-bind) the server socket and apply DSCP and priority."""
        self.local = _check_address(ip, port)
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        try:
            self.sock = OctoiSocket.create_server(self.local, self.rx_cb, self)
        except OSError as exc:
            raise ConfigError(f"failed to create/bind socket: {exc}") from exc
        if self.dscp:
            self._apply(self.sock.set_dscp, self.dscp, "DSCP")
        if self.priority:
            self._apply(self.sock.set_priority, self.priority, "priority")

    @staticmethod
    def _apply(setter: Callable[[int], None], value: int, what: str) -> None:
        try:
            setter(value)
        except OSError as exc:
            raise ConfigError(f"failed to set {what} on socket: {exc}") from exc

    def set_dscp(self, dscp: int) -> None:
        self.dscp = _check_range("DSCP", dscp, 0, 63)
        if self.sock is not None:
            self._apply(self.sock.set_dscp, self.dscp, "DSCP")

    def set_priority(self, priority: int) -> None:
        self.priority = _check_range("priority", priority, 0, 255)
        if self.sock is not None:
            self._apply(self.sock.set_priority, self.priority, "priority")

    def config_lines(self) -> List[str]:
        lines = ["octoi-server"]
        if self.local is not None and self.local[0]:
            lines.append(f" local-bind {self.local[0]} {self.local[1]}")
        if self.dscp:
            lines.append(f" ip-dscp {self.dscp}")
        if self.priority:
            lines.append(f" socket-priority {self.priority}")
        for acc in self.accounts:
            lines.extend(acc.config_lines())
        return lines