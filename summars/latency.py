"""
Latency Probe Sweep for cl-summars

Pings every distinct channel peer once per report and annotates the channel
rows with the round-trip time in milliseconds.

Probes run concurrently but bounded: at most max(peers // 10, 5) are in
flight at any time. Each probe runs on a worker thread with its own
`LightningRpc` connection (one socket per probe, so a slow peer never holds
up the plugin's main RPC connection) and is abandoned after 5 seconds.

Result encoding per peer:
    0               not attempted
    1 .. timeout    elapsed milliseconds (at least 1)
    timeout + 1     timed out or failed
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List

from pyln.client import LightningRpc


PING_TIMEOUT_MS = 5000
PING_FAILED = PING_TIMEOUT_MS + 1
PING_NOT_ATTEMPTED = 0


def concurrency_cap(peer_count: int) -> int:
    return max(peer_count // 10, 5)


def rpc_ping(socket_path: str) -> Callable[[str], None]:
    """Return a blocking probe that pings a peer over a fresh RPC connection."""
    def probe(peer_id: str) -> None:
        rpc = LightningRpc(socket_path)
        rpc.call("ping", {"id": peer_id})
    return probe


class LatencyProbeSweep:
    """
    One bounded fan-out of ping probes.

    Args:
        probe: Blocking callable(peer_id); any exception counts as a failure
        timeout_ms: Per-probe timeout
    """

    def __init__(self, probe: Callable[[str], Any], timeout_ms: int = PING_TIMEOUT_MS):
        self.probe = probe
        self.timeout_ms = timeout_ms
        self.max_in_flight = 0
        self._in_flight = 0

    @property
    def failed(self) -> int:
        return self.timeout_ms + 1

    def _timed_probe(self, peer_id: str) -> int:
        """Run one probe on a worker thread; elapsed ms excludes any queueing."""
        started = time.monotonic()
        self.probe(peer_id)
        return max(int((time.monotonic() - started) * 1000), 1)

    async def _probe_one(self, peer_id: str, semaphore: asyncio.Semaphore,
                         executor: ThreadPoolExecutor) -> int:
        async with semaphore:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(executor, self._timed_probe, peer_id),
                    self.timeout_ms / 1000.0,
                )
            except Exception:
                return self.failed
            finally:
                self._in_flight -= 1

    async def _sweep(self, peer_ids: List[str]) -> Dict[str, int]:
        cap = concurrency_cap(len(peer_ids))
        semaphore = asyncio.Semaphore(cap)
        # One worker per peer: a probe abandoned on timeout keeps its thread
        # busy, so admitted probes must never queue behind it.
        executor = ThreadPoolExecutor(max_workers=len(peer_ids), thread_name_prefix="summars-ping")
        try:
            results = await asyncio.gather(
                *(self._probe_one(peer_id, semaphore, executor) for peer_id in peer_ids)
            )
        finally:
            # Timed-out probes may still be blocked in the socket; do not wait for them
            executor.shutdown(wait=False)
        return dict(zip(peer_ids, results))

    def run(self, peer_ids: Iterable[str]) -> Dict[str, int]:
        """Probe each distinct peer exactly once; returns peer_id -> ms."""
        unique = list(dict.fromkeys(peer_ids))
        if not unique:
            return {}
        return asyncio.run(self._sweep(unique))


def merge_latency(rows: List[Any], latencies: Dict[str, int]) -> None:
    """Annotate every channel row with its peer's probe result."""
    for row in rows:
        row.ping = latencies.get(row.peer_id, PING_NOT_ATTEMPTED)
