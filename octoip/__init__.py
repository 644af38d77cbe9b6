"""E1 over IP (OCTOI): frame buffers, TDM lines, messages, sockets and client/server state machines."""

__version__ = "0.1.0"