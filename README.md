# octoip

`octoip` carries E1 TDM traffic over UDP using the OCTOI (E1oIP) protocol.
It is a library: it provides the pieces an OCTOI server or client is built
from, and leaves the event loop, the timers and the E1 side to the
application.

## What is in the package

- `octoip.fifo` – `FrameFifo`, a ring buffer of 32-byte E1 frames that calls
  `threshold_cb(fifo, frames)` once `threshold` frames are queued
  (E1 → IP direction). `get()` raises `FifoEmptyError` when empty.
- `octoip.rifo` – `FrameRifo`, a "random in, first out" jitter buffer keyed by
  32-bit frame number that puts frames arriving out of order back into
  sequence (IP → E1 direction). `put()` raises `RifoRangeError` outside its
  window; `get()` raises `FrameMissingError` for a slot that never arrived and
  `RifoUnderrunError` when the buffer ran empty, advancing in both cases.
- `octoip.line` – `E1oipLine`, one E1oIP line: batches E1 frames into
  TDM_DATA payloads carrying only changed timeslots (`encode_tdm_payload`,
  `ts_mask_to_index`), feeds received payloads into the RIFO
  (`receive_tdm`, raising `TdmRejected`), and keeps `LineCounter` rate
  counters and `LineStat` stat items. `LineConfig` holds batching factor,
  prefill frame count, buffer-reset percentage and force-all-timeslots.
- `octoip.messages` – `Header`, `MsgType`, `Service`, `build_message`, and
  encoders and decoders for every OCTOI message (`encode_echo`,
  `encode_service_req`, `encode_service_ack`, `encode_service_rej`,
  `encode_redir_cmd`, `encode_auth_req`, `encode_auth_resp`,
  `encode_error_ind`, and the matching `decode_*` functions).
- `octoip.sock` – `OctoiSocket` (server mode: bound, many peers; client mode:
  connected, one peer) and `Peer`, with `tx_*` senders, `e1o_in()` to queue
  frames from the E1 side and `e1t_out()` to pull frames for the E1 side.
- `octoip.fsm` – `validate_message`, `event_for`, `Event`, `Message`,
  `InvalidMessage`, `ts_us_ago` and `show_socket` (a text status report).
- `octoip.server` – `ServerFsm`, the per-client server state machine
  (service request, account lookup, accept / reject / redirect, echo and
  liveness), and `server_rx_cb` to plug into a server socket.
- `octoip.client` – `ClientFsm`, `client_rx_cb`, `ClientConfig` and
  `OctoiDaemon`, which holds the server configuration and all clients.
- `octoip.config` – `Account`, `AccountMode`, `ServerConfig` and
  `ConfigError`; configurations can be written back out with
  `config_lines()`.

## Examples

```python
from octoip.fifo import FrameFifo

batches = []
fifo = FrameFifo(2, lambda f, n: batches.append(f.get_many(n)))
fifo.put(bytes(32))
fifo.put(bytes([0xFF]) * 32)
assert len(batches) == 1
```

```python
from octoip.rifo import FrameRifo, FrameMissingError

rifo = FrameRifo(100)
rifo.put(bytes([1]) * 32, 101)   # frame 100 has not arrived yet
try:
    rifo.get()
except FrameMissingError:
    pass                          # caller repeats the previous frame
assert rifo.get() == bytes([1]) * 32
```

```python
from octoip.line import encode_tdm_payload

payload = encode_tdm_payload(0, [bytes(32)], b"\xff" * 32)
assert payload[:6] == b"\x00\x00\xff\xff\xff\xfe"   # seq 0, timeslots 1..31
assert len(payload) == 6 + 31
```

```python
from octoip.client import OctoiDaemon

daemon = OctoiDaemon()
server = daemon.server_config()
acc = server.account("alice")
acc.set_mode("redirect")
acc.set_redirect("192.0.2.1", 4000)
assert daemon.config_lines() == [
    "octoi-server",
    " account alice",
    "  mode redirect",
    "  redirect 192.0.2.1 4000",
]
```

## Driving it

`OctoiSocket.fileno()` can be registered with `selectors` or any event loop;
call `handle_readable()` when it is readable. The state machines do not run
timers themselves: while `alive_timer_active` is set, call `rx_alive_check()`
every 3 seconds; while `echo_timer_active` is set, call `send_echo_req()`
every 10 seconds; after `state_timeout` seconds in a state (when non-zero),
call `timeout()`. Server-side acceptance of an `ice1usb` account asks the
application through an `ops` object with `client_connected(server, peer,
account)`; `peer_disconnected(peer)` is called when a server peer goes away.

## What it does not do

- There is no command-line program, daemon main loop or telnet/VTY console;
  configuration is done by calling the `config` and `client` classes.
- There is no E1 hardware access (USB or otherwise); the application moves
  frames with `Peer.e1o_in()` and `Peer.e1t_out()`.
- Authentication is not implemented: AUTH_REQ is only logged by the client,
  and the server never enters its authentication states.
- The `dahdi-trunkdev` account mode is refused with a `ConfigError`.

## Installation

```
pip install .
```

## Running the tests

```
pip install .[test]
pytest
```