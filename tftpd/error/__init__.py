from tftpd.constants import ErrorCode
from .base import BaseError


class SessionError(BaseError):
    """
    Failures which end a transfer session.
    """


class TransportError(SessionError):
    """
    Bind, send and receive failures other than timeouts.
    """

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Datagram transport failure: {reason}.")


class SessionTimeoutError(SessionError):

    def __init__(self, timeout):
        self.timeout = timeout
        super().__init__(f"No datagram received from the peer within {timeout} seconds.")


class ProtocolViolationError(SessionError):
    """
    Malformed or unsupported traffic from the peer, never answered with an error packet.
    """


class DecodeError(ProtocolViolationError, ValueError):

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Could not decode packet: {reason}.")


class UnexpectedPacketError(ProtocolViolationError):

    def __init__(self, opcode):
        self.opcode = opcode
        super().__init__(f"Expected a read request, received opcode {opcode}.")


class UnsupportedModeError(ProtocolViolationError):

    def __init__(self, mode):
        self.mode = mode
        super().__init__(f"Transfer mode '{mode}' is not supported.")


class OversizedBlockError(SessionError):
    """
    The data provider returned more than one segment of content.
    """

    def __init__(self, size, limit):
        self.size = size
        self.limit = limit
        super().__init__(f"Block of {size} bytes exceeds the {limit} byte segment size.")


class ResyncExhaustedError(SessionError):

    def __init__(self, tries):
        self.tries = tries
        super().__init__(f"Peer is still out of sync after {tries} mismatched acknowledgments.")


class ProviderError(SessionError):
    """
    Failures resolving or reading a resource, forwarded to the peer in an error packet.
    """

    code = ErrorCode.NOT_DEFINED

    def __init__(self, message, code=None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class ResourceNotFoundError(ProviderError):
    code = ErrorCode.FILE_NOT_FOUND

    def __init__(self, name):
        self.name = name
        super().__init__(f"File not found: '{name}'.")


class AccessViolationError(ProviderError):
    code = ErrorCode.ACCESS_VIOLATION

    def __init__(self, name):
        self.name = name
        super().__init__(f"Access violation: '{name}'.")
