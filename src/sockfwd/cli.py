import argparse
import logging
import signal
import threading

from sockfwd.config.config import forward_config, load_forwarder_settings
from sockfwd.connector.base import ConfigError, ListenError
from sockfwd.events import LoggingEventListener
from sockfwd.forwarder import Forwarder

logger = logging.getLogger('sockfwd')

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'

EXAMPLES = """
Examples:
  %(prog)s --listen-type tcp --listen-addr :12347 --connect-type abstract --connect-addr webview
  %(prog)s --listen-type tcp --listen-addr :8080 --connect-type unix --connect-addr /tmp/socket
  %(prog)s --listen-type unix --listen-addr /tmp/listen.sock --connect-type tcp --connect-addr localhost:9090
"""


def build_parser():
    p = argparse.ArgumentParser(
        prog='sockfwd',
        description='Socket Forwarder - Forward data between different socket types',
        epilog=EXAMPLES, formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument('--listen-type', help='Listen type: tcp, unix (default: tcp)')
    p.add_argument('--listen-addr', help='Listen address')
    p.add_argument('--connect-type', help='Connect type: tcp, unix, abstract (default: unix)')
    p.add_argument('--connect-addr', help='Connect address')
    p.add_argument('--fork', action=argparse.BooleanOptionalAction, default=None,
                   help='Fork connections (handle multiple concurrent connections, default: on)')
    p.add_argument('--dial-timeout', type=float, help='Seconds allowed to connect to the target (default: 10)')
    p.add_argument('--buffer-size', type=int, help='Copy buffer size in bytes (default: 32768)')
    p.add_argument('--full-duplex-drain', action=argparse.BooleanOptionalAction, default=None,
                   help='Keep a connection open until both directions have finished')
    p.add_argument('--drain-on-shutdown', action=argparse.BooleanOptionalAction, default=None,
                   help='Wait for open connections to finish when shutting down')
    p.add_argument('--config', help='Configuration file, applied over ~/sockfwd.cfg')
    p.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    return p


def setup_logging(level):
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)


def install_signal_handlers(stop_event):
    """ Interrupt and termination signals request a graceful shutdown. """
    def on_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_forwarder_settings(args.config)
        config = forward_config(settings, **vars(args))
        setup_logging(args.log_level or settings['log_level'])
        config.validate()
    except ConfigError as e:
        parser.print_usage()
        parser.exit(1, '%s: error: %s\n' % (parser.prog, e))

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    forwarder = Forwarder(config, stop_event)
    forwarder.events.add(LoggingEventListener())
    try:
        forwarder.run()
    except ListenError as e:
        logger.critical("Forwarder error: %s" % e)
        return 1
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
