import asyncio
import ipaddress
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from config import RegistryConfig

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


def format_address(ip: str, port: int) -> str:
    """Join an IP literal and a port into a registry key"""
    if ipaddress.ip_address(ip).version == 6:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


class ServerRegistry:
    """In-memory store of reported game servers with time-based expiry.

    Maps ``host:port`` to the Unix time (whole seconds) of the last report.
    Every access to the mapping goes through one lock so the store can be
    shared by request handlers, worker threads and the sweep task.
    """

    def __init__(
        self,
        config: RegistryConfig,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self.config = config
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def now(self) -> int:
        return int(self._clock())

    def cutoff(self) -> int:
        """Oldest timestamp still considered active"""
        return int(self._clock() - self.config.stale_timeout)

    def report(self, address: str) -> None:
        """Record a report for an already validated address"""
        now = self.now()
        with self._lock:
            # Clock steps backwards must not move an entry back in time
            self._entries[address] = max(now, self._entries.get(address, now))

    def report_host(self, ip: str, port: int) -> str:
        address = format_address(ip, port)
        self.report(address)
        return address

    def last_seen(self, address: str) -> Optional[int]:
        with self._lock:
            return self._entries.get(address)

    def snapshot(self) -> List[str]:
        """
        Active servers: fresh registrations plus the official list

        Returns:
            Sorted addresses without duplicates
        """
        cutoff = self.cutoff()
        with self._lock:
            active = {addr for addr, ts in self._entries.items() if ts >= cutoff}
        active.update(self.config.official_servers)
        return sorted(active)

    def official_servers(self) -> List[str]:
        return list(self.config.official_servers)

    def sweep(self) -> int:
        """
        Remove registrations older than the stale timeout

        Returns:
            Number of entries removed
        """
        cutoff = self.cutoff()
        with self._lock:
            stale = [(addr, ts) for addr, ts in self._entries.items() if ts < cutoff]
            for addr, _ in stale:
                del self._entries[addr]
        for addr, ts in stale:
            logger.info(f"Removing stale server: {addr} (last seen at {ts})")
        return len(stale)

    async def _sweep_loop(self):
        """Periodically sweep stale servers"""
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.sweep()
                if removed > 0:
                    logger.info(f"Cleaned up {removed} stale server(s)")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in sweep task: {e}")

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the background sweep task on the running loop"""
        if self.sweeping:
            logger.warning("Sweep task already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the background sweep task and wait for it to finish"""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
