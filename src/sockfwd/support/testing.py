"""
Socket servers used by the tests as forwarding targets. Each runs its accept loop on a daemon thread
and handles each client on a thread of its own.
"""
import socket
import threading
import time


def tcp_server_socket(host='127.0.0.1', port=0):
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind((host, port))
    s.listen(16)
    return s


def unix_server_socket(path):
    """ path may be a filesystem path or a NUL-prefixed abstract address """
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.bind(path)
    s.listen(16)
    return s


class StreamServer:
    """
    Serves clients of a listening socket until closed. Subclasses implement handle().
    Tracks how many clients were served and how many were connected at the same time.
    """
    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.accepted = 0
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._serve, name=self.__class__.__name__)
        self._thread.daemon = True

    @property
    def address(self):
        """ host:port for tcp servers """
        host, port = self.sock.getsockname()[:2]
        return '%s:%d' % (host, port)

    def start(self):
        self._thread.start()
        return self

    def close(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.close()

    def _serve(self):
        while True:
            try:
                client, _ = self.sock.accept()
            except OSError:
                return
            with self._lock:
                self.accepted += 1
                self.active += 1
                self.peak = max(self.peak, self.active)
            t = threading.Thread(target=self._client, args=(client,))
            t.daemon = True
            t.start()

    def _client(self, client):
        try:
            self.handle(client)
        except OSError:
            pass
        finally:
            with self._lock:
                self.active -= 1
            client.close()

    def handle(self, client: socket.socket):
        raise NotImplementedError


class EchoServer(StreamServer):
    """ echoes everything back until the client closes. """
    def handle(self, client):
        while True:
            data = client.recv(4096)
            if not data:
                return
            client.sendall(data)


class HelloServer(StreamServer):
    """ sends a greeting and closes. """
    def __init__(self, sock, greeting=b'Hello from server'):
        super().__init__(sock)
        self.greeting = greeting

    def handle(self, client):
        client.sendall(self.greeting)


class SinkServer(StreamServer):
    """ reads everything the client sends, keeping it in received, until the client closes. """
    def __init__(self, sock):
        super().__init__(sock)
        self.received = bytearray()

    def handle(self, client):
        while True:
            data = client.recv(4096)
            if not data:
                return
            with self._lock:
                self.received += data


def read_all(sock: socket.socket, size=4096):
    """ reads until the peer closes its side """
    data = bytearray()
    while True:
        chunk = sock.recv(size)
        if not chunk:
            return bytes(data)
        data += chunk


def read_exactly(sock: socket.socket, count):
    data = bytearray()
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def wait_until(predicate, timeout=5.0, interval=0.01):
    """ polls predicate until it returns true or the timeout elapses. Returns the last result. """
    deadline = time.monotonic() + timeout
    result = predicate()
    while not result and time.monotonic() < deadline:
        time.sleep(interval)
        result = predicate()
    return result


def free_port():
    s = tcp_server_socket()
    try:
        return s.getsockname()[1]
    finally:
        s.close()


def connect_tcp(address, timeout=5.0):
    host, _, port = address.rpartition(':')
    sock = socket.create_connection((host, int(port)), timeout=timeout)
    return sock
