import enum
import typing
from tftpd import constants
from tftpd.error import DecodeError

# filenames and messages are treated as opaque 8-bit strings
ENCODING = 'latin-1'


class TransferMode(enum.Enum):
    NETASCII = 'netascii'
    OCTET = 'octet'
    INVALID = ''

    @classmethod
    def from_name(cls, name: str) -> 'TransferMode':
        for mode in (cls.NETASCII, cls.OCTET):
            if name == mode.value:
                return mode
        return cls.INVALID


def _check_short(value: int, name: str):
    if not 0 <= value < constants.BLOCK_MODULUS:
        raise ValueError(f"invalid {name}: {value}")


def _read_string(body: bytes, offset: int, name: str) -> typing.Tuple[str, int]:
    end = body.find(b'\x00', offset)
    if end == -1:
        raise DecodeError(f"{name} is not zero terminated")
    return body[offset:end].decode(ENCODING), end + 1


class TFTPPacket:
    opcode = -1

    def _encode_body(self) -> bytes:
        raise NotImplementedError()

    def encode(self) -> bytes:
        return self.opcode.to_bytes(2, 'big') + self._encode_body()

    @classmethod
    def decode_body(cls, body: bytes) -> 'TFTPPacket':
        raise NotImplementedError()


class ReadRequestPacket(TFTPPacket):
    opcode = constants.RRQ

    def __init__(self, filename: str, mode_name: str = TransferMode.OCTET.value):
        self.filename = filename
        self.mode_name = mode_name
        self.mode = TransferMode.from_name(mode_name)

    def _encode_body(self) -> bytes:
        return self.filename.encode(ENCODING) + b'\x00' + self.mode_name.encode(ENCODING) + b'\x00'

    @classmethod
    def decode_body(cls, body: bytes) -> 'ReadRequestPacket':
        filename, offset = _read_string(body, 0, "filename")
        mode_name, _ = _read_string(body, offset, "mode")
        # anything after the mode holds option extensions, which are not negotiated
        return cls(filename, mode_name)

    def __repr__(self):
        return f"ReadRequestPacket(filename={self.filename!r}, mode={self.mode_name!r})"


class DataPacket(TFTPPacket):
    opcode = constants.DATA

    def __init__(self, block: int, payload: bytes = b''):
        _check_short(block, "block number")
        if len(payload) > constants.SEGMENT_SIZE:
            raise ValueError(f"payload of {len(payload)} bytes exceeds segment size {constants.SEGMENT_SIZE}")
        self.block = block
        self.payload = payload

    @property
    def is_final(self) -> bool:
        return len(self.payload) < constants.SEGMENT_SIZE

    def _encode_body(self) -> bytes:
        return self.block.to_bytes(2, 'big') + self.payload

    @classmethod
    def decode_body(cls, body: bytes) -> 'DataPacket':
        if len(body) < 2:
            raise DecodeError("data packet is missing its block number")
        if len(body) - 2 > constants.SEGMENT_SIZE:
            raise DecodeError(f"data payload of {len(body) - 2} bytes is too large")
        return cls(int.from_bytes(body[:2], 'big'), body[2:])

    def __repr__(self):
        return f"DataPacket(block={self.block}, payload={len(self.payload)} bytes)"


class AckPacket(TFTPPacket):
    opcode = constants.ACK

    def __init__(self, block: int):
        _check_short(block, "block number")
        self.block = block

    def _encode_body(self) -> bytes:
        return self.block.to_bytes(2, 'big')

    @classmethod
    def decode_body(cls, body: bytes) -> 'AckPacket':
        if len(body) < 2:
            raise DecodeError("acknowledgment is missing its block number")
        return cls(int.from_bytes(body[:2], 'big'))

    def __repr__(self):
        return f"AckPacket(block={self.block})"


class ErrorPacket(TFTPPacket):
    opcode = constants.ERROR

    def __init__(self, code: int, message: str = ''):
        _check_short(code, "error code")
        self.code = code
        self.message = message

    def _encode_body(self) -> bytes:
        return self.code.to_bytes(2, 'big') + self.message.encode(ENCODING, 'replace') + b'\x00'

    @classmethod
    def decode_body(cls, body: bytes) -> 'ErrorPacket':
        if len(body) < 2:
            raise DecodeError("error packet is missing its error code")
        message, _ = _read_string(body, 2, "error message")
        return cls(int.from_bytes(body[:2], 'big'), message)

    def __repr__(self):
        return f"ErrorPacket(code={self.code}, message={self.message!r})"


tftp_packet_types = typing.Union[ReadRequestPacket, DataPacket, AckPacket, ErrorPacket]

PACKET_TYPES: typing.Dict[int, typing.Type[TFTPPacket]] = {
    packet_type.opcode: packet_type
    for packet_type in (ReadRequestPacket, DataPacket, AckPacket, ErrorPacket)
}


def decode_packet(datagram: bytes) -> tftp_packet_types:
    if len(datagram) < 2:
        raise DecodeError(f"datagram of {len(datagram)} bytes is too short")
    opcode = int.from_bytes(datagram[:2], 'big')
    packet_type = PACKET_TYPES.get(opcode)
    if packet_type is None:
        raise DecodeError(f"unsupported opcode {opcode}")
    return packet_type.decode_body(datagram[2:])
