"""
The conduit package provides an abstraction of a connected bi-directional byte stream.
The only concrete implementation wraps a stream socket (TCP or local domain).
"""
