import os
import asyncio
import logging
import typing
from tftpd import constants
from tftpd.error import ProviderError, ResourceNotFoundError, AccessViolationError
from tftpd.serialization import ENCODING

log = logging.getLogger(__name__)


class BlockProvider:
    """
    Supplies resource content to a session one block at a time.

    `request_block` is called with block numbers 1, 2, 3... in order for a single resource. It
    returns at most `constants.SEGMENT_SIZE` bytes, returning fewer marks the end of the resource.
    Failures are raised as `ProviderError`, whose code and message are forwarded to the peer.
    """

    async def request_block(self, resource_name: str, block: int) -> bytes:
        raise NotImplementedError()


class MemoryProvider(BlockProvider):
    def __init__(self, resources: typing.Optional[typing.Dict[str, bytes]] = None,
                 segment_size: int = constants.SEGMENT_SIZE):
        self.resources = resources if resources is not None else {}
        self.segment_size = segment_size

    async def request_block(self, resource_name: str, block: int) -> bytes:
        if resource_name not in self.resources:
            raise ResourceNotFoundError(resource_name)
        offset = (block - 1) * self.segment_size
        return self.resources[resource_name][offset:offset + self.segment_size]


class DirectoryProvider(BlockProvider):
    def __init__(self, root_dir: str, segment_size: int = constants.SEGMENT_SIZE,
                 loop: typing.Optional[asyncio.AbstractEventLoop] = None):
        self.root_dir = os.path.realpath(root_dir)
        self.segment_size = segment_size
        self.loop = loop

    def resolve(self, resource_name: str) -> str:
        try:
            # undo the latin-1 decode so names match the raw bytes on disk
            fs_name = os.fsdecode(resource_name.encode(ENCODING))
        except UnicodeEncodeError:
            raise ResourceNotFoundError(resource_name)
        path = os.path.realpath(os.path.join(self.root_dir, fs_name.lstrip('/')))
        if os.path.commonpath([self.root_dir, path]) != self.root_dir:
            log.warning("refusing to serve %s, it is outside of %s", resource_name, self.root_dir)
            raise AccessViolationError(resource_name)
        if not os.path.isfile(path):
            raise ResourceNotFoundError(resource_name)
        return path

    def _read_block(self, resource_name: str, block: int) -> bytes:
        path = self.resolve(resource_name)
        try:
            with open(path, 'rb') as f:
                f.seek((block - 1) * self.segment_size)
                return f.read(self.segment_size)
        except PermissionError:
            raise AccessViolationError(resource_name)
        except FileNotFoundError:
            raise ResourceNotFoundError(resource_name)
        except OSError as err:
            log.warning("failed to read block %i of %s: %s", block, path, err)
            raise ProviderError(f"Could not read '{resource_name}'.")

    async def request_block(self, resource_name: str, block: int) -> bytes:
        loop = self.loop or asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_block, resource_name, block)
