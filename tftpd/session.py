import asyncio
import enum
import logging
import time
import typing

from prometheus_client import Counter, Histogram

from tftpd import constants
from tftpd.error import SessionError, SessionTimeoutError, ProviderError, OversizedBlockError, TransportError
from tftpd.error import DecodeError, UnexpectedPacketError, UnsupportedModeError
from tftpd.error import ResyncExhaustedError
from tftpd.resync import ResyncController, ResyncStatus
from tftpd.serialization import decode_packet, TransferMode, tftp_packet_types
from tftpd.serialization import ReadRequestPacket, DataPacket, AckPacket, ErrorPacket
from tftpd.transport import DatagramEndpoint, Address

if typing.TYPE_CHECKING:
    from tftpd.provider import BlockProvider

log = logging.getLogger(__name__)


class SessionState(enum.Enum):
    AWAITING_REQUEST = 'awaiting_request'
    TRANSFERRING = 'transferring'
    COMPLETED = 'completed'
    FAILED = 'failed'


class TFTPSession:
    """
    Serves one read request, from the request datagram to the final acknowledgment.

    The session starts on the listening endpoint handed over by the dispatcher. Once the request
    is accepted it moves to a private endpoint on a fresh port for the rest of the transfer, and
    moves back when `run` returns, whatever the outcome.
    """

    session_result_metric = Counter(
        "session_result", "Number of finished transfer sessions", namespace="tftp_server",
        labelnames=("result",),
    )
    blocks_sent_metric = Counter(
        "blocks_sent", "Number of data blocks sent", namespace="tftp_server",
    )
    blocks_resent_metric = Counter(
        "blocks_resent", "Number of data blocks sent again after an out of sync acknowledgment",
        namespace="tftp_server",
    )
    bytes_sent_metric = Counter(
        "bytes_sent", "Number of payload bytes sent in data blocks", namespace="tftp_server",
    )
    HISTOGRAM_BUCKETS = (
        .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, float('inf')
    )
    transfer_time_metric = Histogram(
        "transfer_time", "Duration of completed transfers", namespace="tftp_server", buckets=HISTOGRAM_BUCKETS,
    )

    def __init__(self, loop: asyncio.AbstractEventLoop, endpoint: DatagramEndpoint, provider: 'BlockProvider',
                 interface: str = '0.0.0.0', timeout: float = constants.SOCKET_TIMEOUT,
                 max_sync_tries: int = constants.MAX_SYNC_TRIES,
                 resync_delay: float = constants.RESYNC_FLUSH_DELAY):
        self.loop = loop
        self.listening_endpoint = endpoint
        self.endpoint = endpoint
        self.provider = provider
        self.interface = interface
        self.timeout = timeout
        self.resync = ResyncController(max_sync_tries, resync_delay)
        self.state = SessionState.AWAITING_REQUEST
        self.resource_name: typing.Optional[str] = None
        self.peer: typing.Optional[Address] = None
        self.block = 1
        self.buffer = b''
        self._private_endpoint: typing.Optional[DatagramEndpoint] = None

    @property
    def peer_address_and_port(self) -> str:
        if not self.peer:
            return "unknown peer"
        return "%s:%i" % self.peer[:2]

    async def run(self) -> SessionState:
        started = time.perf_counter()
        try:
            await self._handle_request()
            while self.state is SessionState.TRANSFERRING:
                await self._handle_acknowledgment()
        except SessionError as err:
            self.state = SessionState.FAILED
            self._log_failure(err)
        finally:
            self._release_endpoint()
        if self.state is SessionState.COMPLETED:
            self.transfer_time_metric.observe(time.perf_counter() - started)
        self.session_result_metric.labels(result=self.state.value).inc()
        return self.state

    def _log_failure(self, err: SessionError):
        if isinstance(err, SessionTimeoutError):
            log.debug("transfer of %s to %s timed out", self.resource_name, self.peer_address_and_port)
        elif isinstance(err, TransportError):
            log.error("transfer of %s to %s aborted: %s", self.resource_name, self.peer_address_and_port, err)
        elif isinstance(err, ProviderError):
            log.info("could not serve %s to %s: %s", self.resource_name, self.peer_address_and_port, err)
        else:
            log.warning("transfer of %s to %s failed: %s", self.resource_name, self.peer_address_and_port, err)

    async def _read_packet(self) -> bytes:
        deadline = self.loop.time() + self.timeout
        while True:
            remaining = deadline - self.loop.time()
            if remaining <= 0:
                raise SessionTimeoutError(self.timeout)
            try:
                data, address = await self.endpoint.recvfrom(remaining)
            except asyncio.TimeoutError:
                raise SessionTimeoutError(self.timeout)
            if self.peer is None:
                self.peer = address
            if address == self.peer:
                return data
            # stray traffic doesn't move the deadline
            log.debug("datagram from unknown transfer id %s:%i", *address[:2])
            self._send_packet(
                ErrorPacket(constants.ErrorCode.UNKNOWN_TRANSFER_ID, "Unknown transfer ID"), address
            )

    def _send_packet(self, packet: tftp_packet_types, address: Address):
        self.endpoint.sendto(packet.encode(), address)

    async def _request_block(self, block: int) -> bytes:
        try:
            payload = await self.provider.request_block(self.resource_name, block)
        except ProviderError as err:
            self._send_packet(ErrorPacket(err.code, err.message), self.peer)
            raise
        if len(payload) > constants.SEGMENT_SIZE:
            raise OversizedBlockError(len(payload), constants.SEGMENT_SIZE)
        return payload

    def _send_block(self, payload: bytes):
        self.buffer = payload
        self._send_packet(DataPacket(constants.wire_block(self.block), payload), self.peer)
        self.blocks_sent_metric.inc()
        self.bytes_sent_metric.inc(len(payload))

    def resend_last_block(self):
        log.debug("resending block %i of %s to %s", self.block, self.resource_name, self.peer_address_and_port)
        self._send_packet(DataPacket(constants.wire_block(self.block), self.buffer), self.peer)
        self.blocks_resent_metric.inc()

    async def _switch_endpoint(self):
        self._private_endpoint = await DatagramEndpoint.bind(self.loop, self.interface, 0)
        self.endpoint = self._private_endpoint
        log.debug("moved transfer for %s to %s:%i", self.peer_address_and_port, *self.endpoint.local_address[:2])

    def _release_endpoint(self):
        if self._private_endpoint:
            self._private_endpoint.close()
            self._private_endpoint = None
        self.endpoint = self.listening_endpoint

    async def _handle_request(self):
        data = await self._read_packet()
        request = decode_packet(data)
        if not isinstance(request, ReadRequestPacket):
            raise UnexpectedPacketError(request.opcode)
        if request.mode is not TransferMode.OCTET:
            raise UnsupportedModeError(request.mode_name)
        self.resource_name = request.filename
        log.info("%s requested %s", self.peer_address_and_port, self.resource_name)

        payload = await self._request_block(self.block)
        await self._switch_endpoint()
        self._send_block(payload)
        self.resync.reset()
        self.state = SessionState.TRANSFERRING

    async def _handle_acknowledgment(self):
        data = await self._read_packet()
        try:
            packet = decode_packet(data)
        except DecodeError as err:
            log.debug("ignoring datagram from %s: %s", self.peer_address_and_port, err)
            return
        if not isinstance(packet, AckPacket):
            log.debug("ignoring %s from %s while transferring", packet, self.peer_address_and_port)
            return

        if packet.block != constants.wire_block(self.block):
            log.debug("%s acknowledged block %i, expected %i", self.peer_address_and_port, packet.block,
                      constants.wire_block(self.block))
            if await self.resync.on_mismatch(self) is ResyncStatus.EXHAUSTED:
                raise ResyncExhaustedError(self.resync.max_tries)
            return

        self.resync.reset()
        if len(self.buffer) < constants.SEGMENT_SIZE:
            self.state = SessionState.COMPLETED
            log.info("sent %s (%i blocks) to %s", self.resource_name, self.block, self.peer_address_and_port)
            return
        payload = await self._request_block(self.block + 1)
        self.block += 1
        self._send_block(payload)
