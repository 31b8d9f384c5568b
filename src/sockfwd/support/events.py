import logging
import threading

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    Dispatches events to registered handlers. Events may be fired from several threads at once,
    such as the accept loop and the session threads. A handler that raises is logged and does not
    stop the remaining handlers.
    """

    def __init__(self):
        self._handlers = []
        self._lock = threading.Lock()

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        with self._lock:
            self._handlers = self._handlers + [handler]
        return self

    def remove(self, handler):
        with self._lock:
            self._handlers = [h for h in self._handlers if h is not handler]
        return self

    def fire(self, *args, **keywargs):
        for handler in self._handlers:
            try:
                handler(*args, **keywargs)
            except Exception:
                logger.exception("event handler %r failed" % handler)

    def fire_all(self, events):
        for e in events:
            self.fire(e)
