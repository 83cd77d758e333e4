import asyncio
import logging
from typing import Optional

import httpx

from contracts.backend import BackendTarget
from contracts.probe_outcome import ProbeOutcome
from core.shared_status import SharedStatus

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Periodically probes the primary backend and publishes its liveness to a
    SharedStatus. Any received response counts as online; only transport
    failures, timeouts and unbuildable requests count as offline.
    """

    def __init__(
        self,
        target: BackendTarget,
        status: SharedStatus,
        check_interval: float = 5.0,
        probe_timeout: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the HealthMonitor.

        Args:
            target (BackendTarget): The primary backend to probe.
            status (SharedStatus): Where liveness transitions are written.
            check_interval (float): Seconds between probe starts.
            probe_timeout (float): Hard timeout for one probe, shorter than the interval.
            client (httpx.AsyncClient): Optional client; one is created on start otherwise.
        """
        if probe_timeout >= check_interval:
            raise ValueError("probe_timeout must be shorter than check_interval")
        self.target = target
        self.status = status
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout
        self.client = client
        self._owns_client = client is None
        self._task = None
        self._stop_event = asyncio.Event()

    async def probe(self) -> ProbeOutcome:
        """
        Send one HEAD request to the primary backend and classify the outcome.
        """
        if self.client is None:
            self.client = httpx.AsyncClient()
        try:
            request = self.client.build_request(
                "HEAD", self.target.url, timeout=self.probe_timeout
            )
        except Exception as e:
            logger.error(f"Error creating health check request for {self.target}: {e}")
            return ProbeOutcome(online=False, error=str(e))

        # httpx timeouts apply per phase; wait_for bounds the whole exchange
        try:
            resp = await asyncio.wait_for(self.client.send(request), self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Health check for {self.target} timed out after {self.probe_timeout}s"
            )
            return ProbeOutcome(online=False, error="probe timed out")
        except Exception as e:
            logger.warning(f"Health check failed for {self.target}: {e!r}")
            return ProbeOutcome(online=False, error=repr(e))

        await resp.aclose()
        logger.info(f"{self.target} is online (status code: {resp.status_code})")
        return ProbeOutcome(online=True, status_code=resp.status_code)

    def record(self, outcome: ProbeOutcome) -> bool:
        """
        Write a probe outcome to the shared status, logging a transition once.

        Returns:
            bool: True if the liveness flag changed.
        """
        changed = self.status.write(outcome.online)
        if changed:
            if outcome.online:
                logger.info("Primary backend is now online. Switching back to primary.")
            else:
                logger.warning("Primary backend is offline. Switching to secondary.")
        return changed

    async def check_once(self) -> ProbeOutcome:
        outcome = await self.probe()
        self.record(outcome)
        return outcome

    async def run(self):
        """
        Probe loop. Runs until stop() is called; no probe error ends it.
        """
        loop = asyncio.get_running_loop()
        logger.info(
            f"Health monitor started for {self.target} "
            f"(interval={self.check_interval}s, timeout={self.probe_timeout}s)"
        )
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Unexpected health check error for {self.target}: {e}")
                self.record(ProbeOutcome(online=False, error=repr(e)))
            delay = max(0.0, self.check_interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Health monitor stopped for {self.target}")

    async def start(self):
        """
        Start the probe loop as an asynchronous task.
        """
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self):
        """
        Signal the probe loop to stop and wait for it to finish.
        """
        self._stop_event.set()
        if self._task:
            # wait_for cancels the task if it overruns
            try:
                await asyncio.wait_for(self._task, timeout=self.probe_timeout + 1.0)
            except asyncio.TimeoutError:
                logger.warning("Health monitor did not stop in time and was cancelled.")
            self._task = None
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
