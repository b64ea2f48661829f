import enum

# opcodes
RRQ = 1
WRQ = 2
DATA = 3
ACK = 4
ERROR = 5

SEGMENT_SIZE = 512
HEADER_SIZE = 4
PACKET_SIZE = SEGMENT_SIZE + HEADER_SIZE
BLOCK_MODULUS = 2 ** 16

TFTP_PORT = 69
SOCKET_TIMEOUT = 10.0
MAX_SYNC_TRIES = 4
RESYNC_FLUSH_DELAY = 1.0


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


def wire_block(block: int) -> int:
    return block % BLOCK_MODULUS
