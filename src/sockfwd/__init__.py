"""


Socket Forwarding

- Conduit: one connected, bidirectional byte stream. Wraps a socket and knows how to
  half-close and fully release it.
- Connector: reaches out to the target endpoint and produces a conduit. One dial per session,
  no retries.
- Acceptor: the bound, listening socket that yields inbound conduits.
- Relay: splices two conduits, copying bytes in both directions on two threads.
- Forwarder: the accept loop. Pairs each accepted conduit with a freshly dialed one and
  runs the relay inline or on a session thread.

Transports
 - tcp       host:port, empty host means all interfaces (listen) or localhost (dial)
 - unix      a filesystem path
 - abstract  a Linux abstract-namespace name, written with or without a leading '@'.
             Only dialed, never listened on.


## Completion

A session ends as soon as the first of its two directions ends. Both sockets are then
shut down and closed, which unblocks the copy thread still running in the other direction.
A slow reverse transfer may be truncated by this. The relay can optionally propagate a
half-close instead and wait for the second direction (full_duplex_drain).


## Threading

The accept loop runs on the caller's thread (or a background thread via serve_in_background).
With fork enabled each session gets its own daemon thread, and each relay starts two more
for the copy directions. Nothing is shared between sessions.

Shutdown is requested by setting the forwarder's stop event. The acceptor is closed;
sessions in flight are left to finish unless drain_on_shutdown is configured.


"""

__version__ = '0.1.0'
