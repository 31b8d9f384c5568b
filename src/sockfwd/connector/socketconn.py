import errno
import logging
import socket
import sys

from sockfwd.conduit.socket_conduit import SocketConduit
from sockfwd.connector.base import ConfigError, DialError, DialReason, Transport, abstract_name, \
    abstract_sockaddr, format_host_port, split_host_port, unix_supported

logger = logging.getLogger(__name__)

DIAL_TIMEOUT = 10.0


def abstract_supported(platform=None):
    """
    The abstract namespace is a Linux feature (Android included).
    >>> abstract_supported('linux')
    True
    >>> abstract_supported('darwin')
    False
    """
    platform = platform if platform is not None else sys.platform
    return platform.startswith('linux') and unix_supported()


def dial(transport, address, timeout=DIAL_TIMEOUT) -> SocketConduit:
    """
    Opens one connection to a target. There is no retry - a failed attempt is raised to the caller.
    :param transport:   a Transport or its name
    :param address:     host:port for tcp, a path for unix, a name for abstract
    :param timeout:     upper bound in seconds on establishing the connection
    :return: the connected conduit, in blocking mode
    :raises DialError: the transport is not supported or the connection could not be established
    """
    try:
        transport = Transport.parse(transport)
    except ConfigError as e:
        raise DialError(DialReason.UNSUPPORTED_TRANSPORT, str(e)) from e

    if transport is Transport.TCP:
        return _dial_tcp(address, timeout)
    if transport is Transport.UNIX:
        if not unix_supported():
            raise DialError(DialReason.UNSUPPORTED_PLATFORM, "unix sockets are not available")
        return _dial_unix(address, address, timeout)
    if not abstract_supported():
        raise DialError(DialReason.UNSUPPORTED_PLATFORM,
                        "abstract sockets are not available on %s" % sys.platform)
    return _dial_unix(abstract_sockaddr(address), abstract_name(address), timeout)


def _dial_tcp(address, timeout):
    try:
        host, port = split_host_port(address)
    except ConfigError as e:
        raise DialError(DialReason.INVALID_ADDRESS, str(e)) from e
    # an empty host means the local system
    host = host or 'localhost'
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise _dial_error(format_host_port(host, port), e) from e
    sock.settimeout(None)
    return SocketConduit(sock)


def _dial_unix(sockaddr, name, timeout):
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(timeout)
        sock.connect(sockaddr)
        sock.settimeout(None)
    except OSError as e:
        sock.close()
        raise _dial_error(name, e) from e
    return SocketConduit(sock, peer=name)


def _dial_error(name, e: OSError):
    if isinstance(e, (socket.timeout, TimeoutError)):
        reason = DialReason.TIMEOUT
    elif isinstance(e, ConnectionRefusedError):
        reason = DialReason.REFUSED
    elif isinstance(e, socket.gaierror) or e.errno in (errno.ENAMETOOLONG, errno.EINVAL):
        reason = DialReason.INVALID_ADDRESS
    else:
        reason = DialReason.UNREACHABLE
    return DialError(reason, "dial %s: %s" % (name, e))


class TargetConnector:
    """
    A connector that opens a new conduit to a fixed target each time connect() is called.
    """
    def __init__(self, transport, address, timeout=DIAL_TIMEOUT, report_errors=True):
        """
        :param transport: the transport name or Transport. Unsupported values fail on each connect.
        :param address: the target address for the transport
        :param timeout: connect timeout in seconds
        """
        self.transport = transport
        self.address = address
        self.timeout = timeout
        self._report_errors = report_errors

    @property
    def endpoint(self):
        transport = self.transport.value if isinstance(self.transport, Transport) else self.transport
        return '%s:%s' % (transport, self.address)

    def connect(self) -> SocketConduit:
        try:
            conduit = dial(self.transport, self.address, self.timeout)
        except DialError as e:
            method = logger.warning if self._report_errors else logger.debug
            method("error opening socket to %s: %s" % (self.endpoint, e))
            raise
        logger.debug("opened socket to %s" % self.endpoint)
        return conduit
