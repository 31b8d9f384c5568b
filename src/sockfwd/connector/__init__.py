"""
Connectors reach the endpoints of a forwarder: the dialer opens a conduit to the target
and the listener factory creates the acceptor for inbound connections.
"""
