import os
import sys
import signal
import asyncio
import pathlib
import argparse
import logging
import logging.handlers

from tftpd import __version__
from tftpd.conf import Config
from tftpd.provider import DirectoryProvider
from tftpd.prometheus import PrometheusServer
from tftpd.server import TFTPServer

log = logging.getLogger('tftpd')
log.addHandler(logging.NullHandler())


def get_argument_parser():
    parser = argparse.ArgumentParser(
        prog='tftpd', description='Serves files over TFTP (read requests, octet mode).'
    )
    parser.add_argument(
        '--version', dest='cli_version', action='store_true', help='Show tftpd version and exit.'
    )
    parser.add_argument('--verbose', action='store_true', help='Enable debug output.')
    parser.add_argument('--quiet', action='store_true', help='Disable console output.')
    Config.contribute_to_argparse(parser)
    return parser


def ensure_directory_exists(path: str):
    if not os.path.isdir(path):
        pathlib.Path(path).mkdir(parents=True, exist_ok=True)


def setup_logging(args: argparse.Namespace, conf: Config):
    default_formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(name)s:%(lineno)d: %(message)s")
    file_handler = logging.handlers.RotatingFileHandler(
        conf.log_file_path, maxBytes=2097152, backupCount=5
    )
    file_handler.setFormatter(default_formatter)
    log.addHandler(file_handler)

    if not args.quiet:
        handler = logging.StreamHandler()
        handler.setFormatter(default_formatter)
        log.addHandler(handler)

    logging.getLogger('aiohttp').setLevel(logging.CRITICAL)

    if args.verbose:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)


def run_server(args: argparse.Namespace, conf: Config):
    setup_logging(args, conf)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    if args.verbose:
        loop.set_debug(True)

    server = TFTPServer.from_config(loop, DirectoryProvider(conf.served_dir, loop=loop), conf)
    prometheus = PrometheusServer(loop) if conf.prometheus_port else None
    log.info("serving files from %s", conf.served_dir)

    try:
        loop.add_signal_handler(signal.SIGINT, loop.stop)
        loop.add_signal_handler(signal.SIGTERM, loop.stop)
    except NotImplementedError:
        pass  # Not implemented on Windows

    try:
        loop.run_until_complete(server.start())
        if prometheus:
            loop.run_until_complete(prometheus.start(conf.interface, conf.prometheus_port))
        loop.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    except OSError as err:
        log.error("could not start the server: %s", err)
        return 1
    finally:
        loop.run_until_complete(server.stop())
        if prometheus:
            loop.run_until_complete(prometheus.stop())
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
    return 0


def main(argv=None):
    argv = argv or sys.argv[1:]
    parser = get_argument_parser()
    args = parser.parse_args(argv)

    if args.cli_version:
        print(f"tftpd {__version__}")
        return 0

    conf = Config.create_from_arguments(args)
    for directory in (conf.data_dir, conf.served_dir):
        ensure_directory_exists(directory)
    return run_server(args, conf)


if __name__ == "__main__":
    sys.exit(main())
