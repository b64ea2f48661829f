import asyncio
import enum
import logging
import typing

from prometheus_client import Counter

from tftpd import constants

if typing.TYPE_CHECKING:
    from tftpd.session import TFTPSession

log = logging.getLogger(__name__)


class ResyncStatus(enum.Enum):
    RESENT = 'resent'
    EXHAUSTED = 'exhausted'


class ResyncController:
    """
    Bounded retransmission of the last data block when a peer acknowledges the wrong block.

    Every mismatch costs one try, the budget is decremented before it is checked so a budget
    of N allows N - 1 resends and exhausts on the Nth consecutive mismatch.
    """

    resync_metric = Counter(
        "resync", "Number of out of sync acknowledgments handled", namespace="tftp_server",
        labelnames=("result",),
    )

    def __init__(self, max_tries: int = constants.MAX_SYNC_TRIES,
                 flush_delay: float = constants.RESYNC_FLUSH_DELAY):
        if max_tries < 1:
            raise ValueError(f"invalid resync budget: {max_tries}")
        self.max_tries = max_tries
        self.flush_delay = flush_delay
        self.remaining = max_tries

    def reset(self):
        self.remaining = self.max_tries

    async def on_mismatch(self, session: 'TFTPSession') -> ResyncStatus:
        if self.flush_delay > 0:
            await asyncio.sleep(self.flush_delay)
        dropped = session.endpoint.flush()
        if dropped:
            log.debug("flushed %i queued datagrams from %s:%i", dropped, *session.peer[:2])
        self.remaining -= 1
        if self.remaining <= 0:
            self.resync_metric.labels(result=ResyncStatus.EXHAUSTED.value).inc()
            return ResyncStatus.EXHAUSTED
        session.resend_last_block()
        self.resync_metric.labels(result=ResyncStatus.RESENT.value).inc()
        return ResyncStatus.RESENT
