import time
import typing
import asyncio
import logging
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Gauge, Histogram, generate_latest

log = logging.getLogger(__name__)


class PrometheusServer:
    """
    Serves the metrics of the running server at `/metrics`.

    While running it also samples the event loop: how late a wakeup scheduled `probe_interval`
    seconds ahead actually fires, and how many tasks (mostly transfer sessions) are alive.
    """

    loop_lag_metric = Histogram(
        "loop_lag", "Seconds a scheduled event loop wakeup fired late", namespace="tftp_server",
        buckets=(.001, .005, .01, .025, .05, .1, .25, .5, 1.0, float('inf'))
    )
    running_tasks_metric = Gauge(
        "running_tasks", "Number of tasks alive on the event loop", namespace="tftp_server",
    )

    def __init__(self, loop: asyncio.AbstractEventLoop, registry: CollectorRegistry = REGISTRY,
                 probe_interval: float = 1.0):
        self.loop = loop
        self.registry = registry
        self.probe_interval = probe_interval
        self.runner: typing.Optional[web.AppRunner] = None
        self._probe_task: typing.Optional[asyncio.Task] = None

    @property
    def addresses(self) -> typing.List[typing.Tuple[str, int]]:
        if not self.runner:
            return []
        return [address[:2] for address in self.runner.addresses]

    async def start(self, interface: str, port: int):
        app = web.Application()
        app.router.add_get('/metrics', self.handle_metrics_get_request)
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        await web.TCPSite(self.runner, interface, port).start()
        log.info("prometheus metrics listening on %s", ', '.join('%s:%i' % a for a in self.addresses))
        self._probe_task = self.loop.create_task(self._probe_loop())

    async def _probe_loop(self):
        while True:
            scheduled = time.perf_counter() + self.probe_interval
            await asyncio.sleep(self.probe_interval)
            self.loop_lag_metric.observe(max(0.0, time.perf_counter() - scheduled))
            self.running_tasks_metric.set(len(asyncio.all_tasks(self.loop)))

    async def handle_metrics_get_request(self, request: web.Request):
        try:
            body = generate_latest(self.registry)
        except Exception:
            log.exception('could not generate prometheus data')
            raise
        return web.Response(body=body, headers={'Content-Type': CONTENT_TYPE_LATEST})

    async def stop(self):
        if self._probe_task and not self._probe_task.done():
            self._probe_task.cancel()
        self._probe_task = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
