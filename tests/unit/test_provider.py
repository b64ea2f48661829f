import os
import sys
import shutil
import tempfile
import unittest
from tftpd import constants
from tftpd.testcase import AsyncioTestCase
from tftpd.error import ProviderError, ResourceNotFoundError, AccessViolationError
from tftpd.provider import BlockProvider, MemoryProvider, DirectoryProvider
from tftpd.serialization import decode_packet


class TestMemoryProvider(AsyncioTestCase):
    async def test_blocks(self):
        provider = MemoryProvider({'a.bin': b'1' * 512 + b'2' * 100})
        self.assertEqual(b'1' * 512, await provider.request_block('a.bin', 1))
        self.assertEqual(b'2' * 100, await provider.request_block('a.bin', 2))
        self.assertEqual(b'', await provider.request_block('a.bin', 3))

    async def test_not_found(self):
        with self.assertRaises(ResourceNotFoundError) as cm:
            await MemoryProvider().request_block('a.bin', 1)
        self.assertEqual(constants.ErrorCode.FILE_NOT_FOUND, cm.exception.code)

    async def test_abstract(self):
        with self.assertRaises(NotImplementedError):
            await BlockProvider().request_block('a.bin', 1)


class TestDirectoryProvider(AsyncioTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.root_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root_dir)
        os.mkdir(os.path.join(self.root_dir, 'boot'))
        with open(os.path.join(self.root_dir, 'boot', 'kernel.img'), 'wb') as f:
            f.write(b'k' * 1024 + b'end')
        self.provider = DirectoryProvider(self.root_dir, loop=self.loop)

    async def test_read_blocks(self):
        self.assertEqual(b'k' * 512, await self.provider.request_block('boot/kernel.img', 1))
        self.assertEqual(b'k' * 512, await self.provider.request_block('boot/kernel.img', 2))
        self.assertEqual(b'end', await self.provider.request_block('boot/kernel.img', 3))
        self.assertEqual(b'', await self.provider.request_block('boot/kernel.img', 4))

    async def test_leading_slash_is_relative_to_root(self):
        self.assertEqual(b'end', await self.provider.request_block('/boot/kernel.img', 3))

    async def test_missing_file(self):
        with self.assertRaises(ResourceNotFoundError):
            await self.provider.request_block('boot/missing.img', 1)

    async def test_directory_is_not_a_resource(self):
        with self.assertRaises(ResourceNotFoundError):
            await self.provider.request_block('boot', 1)

    async def test_path_traversal(self):
        with self.assertRaises(AccessViolationError) as cm:
            await self.provider.request_block('../../etc/passwd', 1)
        self.assertEqual(constants.ErrorCode.ACCESS_VIOLATION, cm.exception.code)
        with self.assertRaises(AccessViolationError):
            await self.provider.request_block('boot/../../outside', 1)

    async def test_symlink_out_of_root(self):
        outside = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, outside)
        with open(os.path.join(outside, 'secret'), 'wb') as f:
            f.write(b'secret')
        os.symlink(os.path.join(outside, 'secret'), os.path.join(self.root_dir, 'link'))
        with self.assertRaises(AccessViolationError):
            await self.provider.request_block('link', 1)

    @unittest.skipIf(sys.getfilesystemencoding().lower() not in ('utf-8', 'utf8'), 'needs a utf-8 filesystem')
    async def test_non_ascii_name_from_request(self):
        with open(os.path.join(self.root_dir, 'café.bin'), 'wb') as f:
            f.write(b'croissant')
        request = decode_packet(b'\x00\x01caf\xc3\xa9.bin\x00octet\x00')
        self.assertEqual(b'croissant', await self.provider.request_block(request.filename, 1))

    async def test_name_outside_wire_encoding(self):
        with self.assertRaises(ResourceNotFoundError):
            await self.provider.request_block('snow☃.bin', 1)


class TestProviderError(AsyncioTestCase):
    def test_codes(self):
        self.assertEqual(constants.ErrorCode.NOT_DEFINED, ProviderError("oops").code)
        self.assertEqual(3, ProviderError("full", code=3).code)
        self.assertEqual("full", ProviderError("full", code=3).message)
        self.assertEqual(constants.ErrorCode.FILE_NOT_FOUND, ResourceNotFoundError('a').code)
