import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx

from contracts.backend import BackendTarget
from contracts.probe_outcome import ProbeOutcome
from core.health_monitor import HealthMonitor
from core.shared_status import SharedStatus

LOGGER = "core.health_monitor"


class ScriptedUpstream:
    """Mock transport handler replaying a list of probe results."""

    def __init__(self, results):
        self.results = list(results)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        result = self.results.pop(0) if self.results else 200
        if isinstance(result, Exception):
            raise result
        return httpx.Response(result)


def transition_lines(records):
    return [r.getMessage() for r in records if "Switching" in r.getMessage()]


class TestHealthMonitor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.target = BackendTarget.from_url("primary", "http://server-a:8080/app")
        self.status = SharedStatus()

    def make_monitor(self, results, **kwargs):
        self.upstream = ScriptedUpstream(results)
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.upstream))
        kwargs.setdefault("check_interval", 5.0)
        kwargs.setdefault("probe_timeout", 2.0)
        return HealthMonitor(self.target, self.status, client=client, **kwargs)

    async def test_probe_sends_head_to_primary(self):
        monitor = self.make_monitor([200])
        outcome = await monitor.probe()
        self.assertEqual(outcome, ProbeOutcome(online=True, status_code=200))
        request = self.upstream.requests[0]
        self.assertEqual(request.method, "HEAD")
        self.assertEqual(str(request.url), "http://server-a:8080/app")
        self.assertEqual(request.extensions["timeout"]["read"], 2.0)

    async def test_error_status_counts_as_online(self):
        monitor = self.make_monitor([503])
        outcome = await monitor.check_once()
        self.assertTrue(outcome.online)
        self.assertEqual(outcome.status_code, 503)
        self.assertTrue(self.status.read())

    async def test_transport_errors_count_as_offline(self):
        for error in (
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            httpx.ConnectTimeout("unreachable"),
        ):
            with self.subTest(error=error):
                self.status.write(True)
                monitor = self.make_monitor([error])
                outcome = await monitor.check_once()
                self.assertFalse(outcome.online)
                self.assertIsNone(outcome.status_code)
                self.assertIsNotNone(outcome.error)
                self.assertFalse(self.status.read())

    async def test_request_build_error_counts_as_offline(self):
        client = MagicMock()
        client.build_request.side_effect = httpx.InvalidURL("bad url")
        client.send = AsyncMock()
        monitor = HealthMonitor(self.target, self.status, client=client)
        outcome = await monitor.check_once()
        self.assertFalse(outcome.online)
        self.assertFalse(self.status.read())
        client.send.assert_not_called()

    async def test_status_follows_each_probe(self):
        results = [200, httpx.ConnectError("down"), 500, httpx.ReadTimeout("slow"), 204]
        expected = [True, False, True, False, True]
        monitor = self.make_monitor(results)
        for online in expected:
            await monitor.check_once()
            self.assertEqual(self.status.read(), online)

    async def test_three_healthy_probes_log_no_transition(self):
        monitor = self.make_monitor([200, 200, 200])
        with self.assertLogs(LOGGER, level="INFO") as logs:
            for _ in range(3):
                await monitor.check_once()
        self.assertTrue(self.status.read())
        self.assertEqual(transition_lines(logs.records), [])
        self.assertEqual(len(logs.records), 3)

    async def test_failover_and_recovery_logged_once_each(self):
        results = [
            httpx.ConnectTimeout("timeout"),
            httpx.ConnectTimeout("timeout"),
            httpx.ConnectTimeout("timeout"),
            200,
            200,
        ]
        monitor = self.make_monitor(results)
        with self.assertLogs(LOGGER, level="INFO") as logs:
            for _ in results:
                await monitor.check_once()
        self.assertEqual(
            transition_lines(logs.records),
            [
                "Primary backend is offline. Switching to secondary.",
                "Primary backend is now online. Switching back to primary.",
            ],
        )

    async def test_trickling_primary_is_cut_off_at_probe_timeout(self):
        # Each byte arrives well inside httpx's per-read timeout
        async def trickle(reader, writer):
            try:
                for byte in b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n":
                    writer.write(bytes([byte]))
                    await writer.drain()
                    await asyncio.sleep(0.05)
            except OSError:
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(trickle, "127.0.0.1", 0)
        self.addCleanup(server.close)
        port = server.sockets[0].getsockname()[1]
        target = BackendTarget.from_url("primary", f"http://127.0.0.1:{port}")
        monitor = HealthMonitor(target, self.status, check_interval=1.0, probe_timeout=0.3)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertLogs(LOGGER, level="WARNING") as logs:
            outcome = await monitor.check_once()
        elapsed = loop.time() - started
        await monitor.stop()

        self.assertLess(elapsed, 0.9)
        self.assertFalse(outcome.online)
        self.assertEqual(outcome.error, "probe timed out")
        self.assertFalse(self.status.read())
        self.assertTrue(any("timed out after 0.3s" in line for line in logs.output))

    async def test_stalled_probe_does_not_delay_stop(self):
        async def stall(request):
            await asyncio.sleep(30)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(stall))
        monitor = HealthMonitor(
            self.target, self.status, check_interval=0.5, probe_timeout=0.1, client=client
        )
        await monitor.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(monitor.stop(), 1.0)
        self.assertFalse(monitor.running)
        self.assertFalse(self.status.read())
        await client.aclose()

    def test_probe_timeout_must_be_shorter_than_interval(self):
        with self.assertRaises(ValueError):
            HealthMonitor(self.target, self.status, check_interval=2.0, probe_timeout=2.0)

    async def test_run_loop_probes_until_stopped(self):
        monitor = self.make_monitor(
            [200, httpx.ConnectError("down")] * 50, check_interval=0.02, probe_timeout=0.01
        )
        await monitor.start()
        self.assertTrue(monitor.running)
        await asyncio.sleep(0.15)
        await monitor.stop()
        self.assertFalse(monitor.running)
        probes = len(self.upstream.requests)
        self.assertGreaterEqual(probes, 3)
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.upstream.requests), probes)

    async def test_loop_survives_unexpected_errors(self):
        monitor = self.make_monitor([], check_interval=0.02, probe_timeout=0.01)
        monitor.probe = AsyncMock(side_effect=[RuntimeError("boom"), ProbeOutcome(online=True)] * 20)
        await monitor.start()
        await asyncio.sleep(0.1)
        self.assertTrue(monitor.running)
        await monitor.stop()
        self.assertGreaterEqual(monitor.probe.await_count, 3)

    async def test_stop_is_idempotent_and_keeps_injected_client(self):
        monitor = self.make_monitor([200], check_interval=0.05, probe_timeout=0.01)
        await monitor.start()
        await monitor.stop()
        await monitor.stop()
        self.assertIsNotNone(monitor.client)
        self.assertFalse(monitor.client.is_closed)
        await monitor.client.aclose()


if __name__ == "__main__":
    unittest.main()
