import socket
from enum import Enum

ABSTRACT_PREFIX = '@'


class ForwarderError(Exception):
    """ Base class for errors raised by the forwarder. """


class ConfigError(ForwarderError):
    """ The configuration is not usable, e.g. an unknown transport or empty address.
        Fatal, raised before any I/O. """


class ListenReason(Enum):
    ADDRESS_IN_USE = 'address in use'
    PERMISSION_DENIED = 'permission denied'
    UNSUPPORTED_TRANSPORT = 'unsupported transport'
    INVALID_ADDRESS = 'invalid address'
    BIND_FAILED = 'bind failed'


class DialReason(Enum):
    TIMEOUT = 'timeout'
    REFUSED = 'connection refused'
    UNSUPPORTED_TRANSPORT = 'unsupported transport'
    UNSUPPORTED_PLATFORM = 'unsupported on this platform'
    INVALID_ADDRESS = 'invalid address'
    UNREACHABLE = 'unreachable'


class ListenError(ForwarderError):
    """ The acceptor could not be created. Fatal to the whole forwarder. """
    def __init__(self, reason: ListenReason, message):
        super().__init__(message)
        self.reason = reason


class AcceptError(ForwarderError):
    """ A transient failure accepting a connection. The accept loop logs it and continues. """


class DialError(ForwarderError):
    """ The target could not be reached. Ends only the pending session. """
    def __init__(self, reason: DialReason, message):
        super().__init__(message)
        self.reason = reason


class CopyError(ForwarderError):
    """ An I/O failure while relaying. Ends only the session it occurred in. """
    def __init__(self, direction, message):
        super().__init__(message)
        self.direction = direction


class Transport(Enum):
    """ The socket family used for one side of the forwarder. """
    TCP = 'tcp'
    UNIX = 'unix'
    ABSTRACT = 'abstract'

    @classmethod
    def parse(cls, value):
        """
        >>> Transport.parse('unix')
        <Transport.UNIX: 'unix'>
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ConfigError("unsupported transport: %s" % value) from None


def split_host_port(address):
    """
    Splits a stream address in host:port syntax. The host may be empty, and IPv6 hosts
    are written in brackets.

    >>> split_host_port(':8080')
    ('', 8080)
    >>> split_host_port('[::1]:53')
    ('::1', 53)
    """
    host, sep, port = address.rpartition(':')
    if not sep:
        raise ConfigError("missing port in address %s" % address)
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise ConfigError("too many colons in address %s" % address)
    try:
        port = int(port)
    except ValueError:
        raise ConfigError("invalid port in address %s" % address) from None
    if not 0 <= port <= 65535:
        raise ConfigError("port out of range in address %s" % address)
    return host, port


def abstract_name(name):
    """
    Qualifies a name in the abstract namespace with the '@' marker. Already qualified
    names are returned unchanged.

    >>> abstract_name('webview')
    '@webview'
    >>> abstract_name('@webview')
    '@webview'
    """
    return name if name.startswith(ABSTRACT_PREFIX) else ABSTRACT_PREFIX + name


def abstract_sockaddr(name):
    """ the address passed to connect(): the kernel marks abstract names with a leading NUL """
    return '\0' + abstract_name(name)[len(ABSTRACT_PREFIX):]


def format_host_port(host, port):
    return ('[%s]:%d' if ':' in host else '%s:%d') % (host, port)


def format_sockaddr(addr):
    """
    Renders a socket address for logs.

    >>> format_sockaddr(('127.0.0.1', 80))
    '127.0.0.1:80'
    >>> format_sockaddr('\\0webview')
    '@webview'
    >>> format_sockaddr('')
    'unnamed'
    """
    if isinstance(addr, tuple):
        return format_host_port(addr[0], addr[1])
    if isinstance(addr, bytes):
        addr = addr.decode('utf-8', 'replace')
    if not addr:
        return 'unnamed'
    if addr.startswith('\0'):
        return ABSTRACT_PREFIX + addr[1:]
    return addr


def unix_supported():
    return hasattr(socket, 'AF_UNIX')
