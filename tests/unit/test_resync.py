from unittest import mock
from tftpd.testcase import AsyncioTestCase
from tftpd.resync import ResyncController, ResyncStatus


class TestResyncController(AsyncioTestCase):
    def make_session(self, queued=0):
        session = mock.Mock()
        session.peer = ('127.0.0.2', 5555)
        session.endpoint.flush.return_value = queued
        return session

    async def test_budget_decrements_before_check(self):
        session = self.make_session()
        resync = ResyncController(max_tries=4, flush_delay=0)
        results = [await resync.on_mismatch(session) for _ in range(4)]
        self.assertListEqual(
            [ResyncStatus.RESENT, ResyncStatus.RESENT, ResyncStatus.RESENT, ResyncStatus.EXHAUSTED], results
        )
        self.assertEqual(3, session.resend_last_block.call_count)
        self.assertEqual(4, session.endpoint.flush.call_count)
        self.assertEqual(0, resync.remaining)

    async def test_budget_of_one_never_resends(self):
        session = self.make_session(queued=2)
        resync = ResyncController(max_tries=1, flush_delay=0)
        self.assertIs(ResyncStatus.EXHAUSTED, await resync.on_mismatch(session))
        session.resend_last_block.assert_not_called()

    async def test_reset(self):
        session = self.make_session()
        resync = ResyncController(max_tries=3, flush_delay=0)
        await resync.on_mismatch(session)
        await resync.on_mismatch(session)
        self.assertEqual(1, resync.remaining)
        resync.reset()
        self.assertEqual(3, resync.remaining)
        self.assertIs(ResyncStatus.RESENT, await resync.on_mismatch(session))

    async def test_flush_delay(self):
        session = self.make_session()
        resync = ResyncController(max_tries=4, flush_delay=0.1)
        started = self.loop.time()
        await resync.on_mismatch(session)
        self.assertGreaterEqual(self.loop.time() - started, 0.09)

    def test_invalid_budget(self):
        with self.assertRaises(ValueError):
            ResyncController(max_tries=0)
