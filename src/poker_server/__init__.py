"""
Planning poker server.

A small group estimates stories in real time: the host drives the session,
participants submit hidden estimates, the host reveals them and records a
final estimate. Room state lives in a single in-process registry; clients
talk to it over a WebSocket.
"""

__version__ = "0.1.0"
