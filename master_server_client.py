import aiohttp
import asyncio
import json
import logging
from typing import Optional, List
from dataclasses import dataclass

logger = logging.getLogger(__name__)

@dataclass
class DirectoryClientConfig:
    """Configuration for the server directory connection"""
    url: str = "http://localhost:80"  # Directory URL
    user_agent: str = "LU-Server/0.1"  # Must match the directory's allowed user agent
    game_port: int = 2301  # Port players connect to
    report_interval: int = 60  # Seconds between announcements
    timeout: int = 10  # Request timeout
    retry_attempts: int = 3  # Number of retry attempts
    retry_delay: int = 2  # Seconds between retries

class DirectoryClient:
    """Client used by game servers to announce themselves and browse the directory"""

    def __init__(self, config: DirectoryClientConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self.report_task: Optional[asyncio.Task] = None
        self._running = False

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()

    async def connect(self):
        """Initialize HTTP session"""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.config.user_agent}
            )
            logger.info(f"Connected to server directory: {self.config.url}")

    async def disconnect(self):
        """Close HTTP session and stop reporting"""
        if self.report_task:
            await self.stop_reporting()

        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Disconnected from server directory")

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        retry: bool = True
    ) -> Optional[str]:
        """Make HTTP request with retry logic, returning the response body"""
        if not self.session:
            await self.connect()

        url = f"{self.config.url}{endpoint}"
        attempts = self.config.retry_attempts if retry else 1

        for attempt in range(attempts):
            try:
                async with self.session.request(method, url, data=data) as response:
                    if response.status == 200:
                        return await response.text()
                    elif response.status == 429:
                        logger.warning("Rate limit exceeded")
                        if attempt < attempts - 1:
                            await asyncio.sleep(self.config.retry_delay * 2)
                            continue
                        return None
                    elif response.status < 500:
                        error_text = await response.text()
                        logger.error(f"Request rejected: {response.status} - {error_text}")
                        return None
                    else:
                        error_text = await response.text()
                        logger.error(f"Request failed: {response.status} - {error_text}")

                        if attempt < attempts - 1:
                            await asyncio.sleep(self.config.retry_delay)
                            continue
                        return None

            except asyncio.TimeoutError:
                logger.error(f"Request timeout: {endpoint}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None
            except aiohttp.ClientError as e:
                logger.error(f"Request error: {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None

        return None

    async def report(self, port: Optional[int] = None) -> bool:
        """
        Announce this game server to the directory

        The directory takes the address from the connection, so only
        the game port is sent.

        Args:
            port: Game port (uses configured port if not provided)

        Returns:
            True if the directory acknowledged the report
        """
        port = port or self.config.game_port
        response = await self._make_request("POST", "/report.php", {"port": str(port)}, retry=False)
        return response is not None

    async def report_loop(self, port: Optional[int] = None):
        """
        Background task that announces periodically

        Args:
            port: Game port (uses configured port if not provided)
        """
        self._running = True
        logger.info(f"Starting report loop (interval: {self.config.report_interval}s)")

        while self._running:
            try:
                success = await self.report(port)
                if not success:
                    logger.warning("Report failed")

                # Wait for next report
                await asyncio.sleep(self.config.report_interval)

            except asyncio.CancelledError:
                logger.info("Report loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in report loop: {e}")
                await asyncio.sleep(self.config.report_interval)

        logger.info("Report loop stopped")

    async def start_reporting(self, port: Optional[int] = None):
        """Start background report task"""
        if self.report_task and not self.report_task.done():
            logger.warning("Reporting already running")
            return

        self.report_task = asyncio.create_task(self.report_loop(port))

    async def stop_reporting(self):
        """Stop background report task"""
        if self.report_task:
            self._running = False
            self.report_task.cancel()
            try:
                await self.report_task
            except asyncio.CancelledError:
                pass
            self.report_task = None
            logger.info("Reporting stopped")

    async def _fetch_list(self, endpoint: str) -> List[str]:
        response = await self._make_request("GET", endpoint)
        if response is None:
            logger.warning(f"Failed to fetch {endpoint}")
            return []

        servers = [line.strip() for line in response.splitlines() if line.strip()]
        logger.info(f"Fetched {len(servers)} server(s)")
        return servers

    async def fetch_servers(self) -> List[str]:
        """
        Fetch the active server list

        Returns:
            Addresses as ``host:port`` strings
        """
        return await self._fetch_list("/servers.txt")

    async def fetch_official(self) -> List[str]:
        """Fetch the official server list"""
        return await self._fetch_list("/official.txt")

    async def check_health(self) -> bool:
        """
        Check if the directory is accessible

        Returns:
            True if the directory is healthy
        """
        response = await self._make_request("GET", "/health", retry=False)
        if response is None:
            return False
        try:
            return json.loads(response).get("status") == "ok"
        except ValueError:
            return False
