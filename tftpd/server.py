import asyncio
import logging
import typing
from asyncio.transports import DatagramTransport

from prometheus_client import Counter, Gauge

from tftpd import constants
from tftpd.session import TFTPSession, SessionState
from tftpd.transport import DatagramEndpoint, Address

if typing.TYPE_CHECKING:
    from tftpd.conf import Config
    from tftpd.provider import BlockProvider

log = logging.getLogger(__name__)


class TFTPServerProtocol(asyncio.DatagramProtocol):
    """
    Listens on the well-known port and starts one session per client address.
    """

    rejected_request_metric = Counter(
        "rejected_request", "Number of requests dropped because the server is at its session limit",
        namespace="tftp_server",
    )
    active_sessions_metric = Gauge(
        "active_sessions", "Number of transfers in progress", namespace="tftp_server",
    )

    def __init__(self, loop: asyncio.AbstractEventLoop, provider: 'BlockProvider', interface: str = '0.0.0.0',
                 timeout: float = constants.SOCKET_TIMEOUT, max_sync_tries: int = constants.MAX_SYNC_TRIES,
                 resync_delay: float = constants.RESYNC_FLUSH_DELAY, max_sessions: int = 0):
        self.loop = loop
        self.provider = provider
        self.interface = interface
        self.timeout = timeout
        self.max_sync_tries = max_sync_tries
        self.resync_delay = resync_delay
        self.max_sessions = max_sessions
        self.transport: typing.Optional[DatagramTransport] = None
        self.sessions: typing.Dict[Address, asyncio.Task] = {}
        self.finished_sessions: typing.Dict[SessionState, int] = {}

    def connection_made(self, transport: DatagramTransport):
        self.transport = transport

    def connection_lost(self, exc: typing.Optional[Exception]):
        if exc:
            log.error("lost the listening socket: %s", exc)
        self.transport = None

    def error_received(self, exc: Exception):
        log.warning("error on the listening socket: %s", exc)

    def datagram_received(self, data: bytes, addr: Address) -> None:
        if addr in self.sessions:
            log.debug("dropping datagram from %s:%i, its transfer is already in progress", *addr[:2])
            return
        if self.max_sessions and len(self.sessions) >= self.max_sessions:
            log.warning("dropping request from %s:%i, %i transfers are in progress", addr[0], addr[1],
                        len(self.sessions))
            self.rejected_request_metric.inc()
            return
        endpoint = DatagramEndpoint(self.loop, owns_transport=False)
        endpoint.connection_made(self.transport)
        endpoint.datagram_received(data, addr)
        session = TFTPSession(
            self.loop, endpoint, self.provider, self.interface, self.timeout, self.max_sync_tries,
            self.resync_delay
        )
        task = self.loop.create_task(session.run())
        task.add_done_callback(lambda finished: self._session_finished(addr, endpoint, finished))
        self.sessions[addr] = task
        self.active_sessions_metric.inc()

    def _session_finished(self, addr: Address, endpoint: DatagramEndpoint, task: asyncio.Task):
        self.sessions.pop(addr, None)
        self.active_sessions_metric.dec()
        endpoint.close()
        if task.cancelled():
            return
        err = task.exception()
        if err:
            log.error("session for %s:%i crashed", addr[0], addr[1], exc_info=err)
            return
        state = task.result()
        self.finished_sessions[state] = self.finished_sessions.get(state, 0) + 1
        log.debug("session for %s:%i finished: %s", addr[0], addr[1], state.value)

    def stop(self):
        while self.sessions:
            _, task = self.sessions.popitem()
            task.cancel()
        if self.transport and not self.transport.is_closing():
            self.transport.close()


class TFTPServer:
    def __init__(self, loop: asyncio.AbstractEventLoop, provider: 'BlockProvider', interface: str = '0.0.0.0',
                 port: int = constants.TFTP_PORT, timeout: float = constants.SOCKET_TIMEOUT,
                 max_sync_tries: int = constants.MAX_SYNC_TRIES, resync_delay: float = constants.RESYNC_FLUSH_DELAY,
                 max_sessions: int = 0):
        self.loop = loop
        self.provider = provider
        self.interface = interface
        self.port = port
        self.timeout = timeout
        self.max_sync_tries = max_sync_tries
        self.resync_delay = resync_delay
        self.max_sessions = max_sessions
        self.protocol: typing.Optional[TFTPServerProtocol] = None
        self.started_listening = asyncio.Event()

    @classmethod
    def from_config(cls, loop: asyncio.AbstractEventLoop, provider: 'BlockProvider', conf: 'Config') -> 'TFTPServer':
        return cls(
            loop, provider, conf.interface, conf.udp_port, conf.timeout, conf.max_sync_tries, conf.resync_delay,
            conf.max_sessions
        )

    @property
    def local_address(self) -> typing.Optional[Address]:
        if not self.protocol or not self.protocol.transport:
            return None
        return self.protocol.transport.get_extra_info('sockname')

    async def start(self):
        if self.protocol is not None:
            raise Exception("already running")
        try:
            _, self.protocol = await self.loop.create_datagram_endpoint(
                lambda: TFTPServerProtocol(
                    self.loop, self.provider, self.interface, self.timeout, self.max_sync_tries,
                    self.resync_delay, self.max_sessions
                ),
                local_addr=(self.interface, self.port)
            )
        except OSError:
            log.error("Failed to bind UDP %s:%i", self.interface, self.port)
            raise
        self.started_listening.set()
        log.info("TFTP server listening on UDP %s:%i", self.interface, self.port)

    async def stop(self):
        if self.protocol:
            tasks = list(self.protocol.sessions.values())
            self.protocol.stop()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.protocol = None
            self.started_listening.clear()
            log.info("Stopped TFTP server")
