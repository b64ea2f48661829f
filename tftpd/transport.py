import asyncio
import logging
import typing
from asyncio.transports import DatagramTransport
from tftpd import constants
from tftpd.error import TransportError

log = logging.getLogger(__name__)

Address = typing.Tuple[str, int]


class DatagramEndpoint(asyncio.DatagramProtocol):
    """
    Queues inbound datagrams so a session can read them one at a time with a timeout.

    An endpoint created by `bind` owns its socket. The dispatcher also hands sessions endpoints
    attached to its own well-known transport, those are detached on close instead.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, owns_transport: bool = True,
                 packet_size: int = constants.PACKET_SIZE):
        self.loop = loop
        self.owns_transport = owns_transport
        self.packet_size = packet_size
        self.transport: typing.Optional[DatagramTransport] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._error: typing.Optional[Exception] = None

    @classmethod
    async def bind(cls, loop: asyncio.AbstractEventLoop, interface: str, port: int) -> 'DatagramEndpoint':
        try:
            _, protocol = await loop.create_datagram_endpoint(lambda: cls(loop), local_addr=(interface, port))
        except OSError as err:
            raise TransportError(f"could not bind {interface}:{port} ({err})") from err
        return protocol

    @property
    def local_address(self) -> typing.Optional[Address]:
        if not self.transport:
            return None
        return self.transport.get_extra_info('sockname')

    def connection_made(self, transport: DatagramTransport):
        self.transport = transport

    def connection_lost(self, exc: typing.Optional[Exception]):
        self.transport = None
        if exc is not None:
            self.error_received(exc)
        else:
            self._inbox.put_nowait(None)

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._inbox.put_nowait((data[:self.packet_size], addr))

    def error_received(self, exc: Exception) -> None:
        log.debug("datagram endpoint error: %s", exc)
        self._error = exc
        self._inbox.put_nowait(None)

    async def recvfrom(self, timeout: float) -> typing.Tuple[bytes, Address]:
        if self._error is not None:
            raise TransportError(str(self._error))
        received = await asyncio.wait_for(self._inbox.get(), timeout)
        if received is None:
            raise TransportError(str(self._error) if self._error else "endpoint closed")
        return received

    def sendto(self, data: bytes, addr: Address):
        if not self.transport or self.transport.is_closing():
            raise TransportError("endpoint is not connected")
        try:
            self.transport.sendto(data, addr)
        except OSError as err:
            raise TransportError(f"could not send {len(data)} bytes to {addr[0]}:{addr[1]} ({err})") from err

    def flush(self) -> int:
        dropped = 0
        while not self._inbox.empty():
            if self._inbox.get_nowait() is None:
                # keep the close/error notification for the next reader
                self._inbox.put_nowait(None)
                break
            dropped += 1
        return dropped

    def close(self):
        if self.owns_transport and self.transport and not self.transport.is_closing():
            self.transport.close()
        self.transport = None
