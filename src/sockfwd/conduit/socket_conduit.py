import socket
import threading

from sockfwd.conduit import base
from sockfwd.connector.base import format_sockaddr


class SocketConduit(base.Conduit):
    """
    A conduit that provides communication via a connected stream socket.
    :param sock The open, connected socket
    """
    def __init__(self, sock: socket.socket, peer=None):
        """
        :param sock: the socket that represents the connection
        :type sock: socket
        :param peer: printable identity of the remote end. Taken from the socket when not given.
        """
        self.sock = sock
        self._peer = peer
        self._lock = threading.Lock()
        self._closed = False

    @property
    def open(self) -> bool:
        return not self._closed and self.sock.fileno() >= 0

    @property
    def target(self):
        return self.sock

    @property
    def peer(self):
        if self._peer is None:
            try:
                self._peer = format_sockaddr(self.sock.getpeername())
            except OSError:
                self._peer = 'unknown'
        return self._peer

    def recv_into(self, buffer):
        return self.sock.recv_into(buffer)

    def sendall(self, data):
        self.sock.sendall(data)

    def shutdown_output(self):
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass    # already closed or reset by the peer

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            # wakes up any thread blocked in recv() on this socket
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass    # the peer may already have closed the socket
        finally:
            self.sock.close()

    def __repr__(self):
        return '<SocketConduit %s>' % self.peer
