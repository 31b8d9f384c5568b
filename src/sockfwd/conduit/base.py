from abc import abstractmethod


class Conduit:
    """
    A conduit is one connected, two-way byte stream. Reads and writes may happen concurrently
    from different threads, one reader and one writer.
    """

    @property
    @abstractmethod
    def target(self):
        """ the underlying resource """
        raise NotImplementedError

    @property
    @abstractmethod
    def peer(self) -> str:
        """ printable identity of the remote end """
        raise NotImplementedError

    @property
    @abstractmethod
    def open(self) -> bool:
        """ determines if this conduit is open and can be read from/written to. """
        raise NotImplementedError

    @abstractmethod
    def recv_into(self, buffer) -> int:
        """ reads available bytes into buffer. Returns 0 at end of stream. """
        raise NotImplementedError

    @abstractmethod
    def sendall(self, data):
        raise NotImplementedError

    @abstractmethod
    def shutdown_output(self):
        """ signals end of stream to the peer while leaving the input open. """
        raise NotImplementedError

    @abstractmethod
    def close(self):
        """
        Closes both directions. Any thread blocked reading from the conduit is woken up.
        """
        raise NotImplementedError
