"""
Fetcher Module - Discovers VNC hosts to capture.

Sources:
1. Shodan host search (REST, paginated): a closed batch of pages
2. Shodan streaming API: an open feed of banners as they are collected
3. A plain text host list

Discovery failures raise DiscoveryError and end the run; they are not
per-host problems.
"""

import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiohttp

from slideshow.errors import DiscoveryError
from slideshow.models import HostAddress
from slideshow.utils.logger import get_logger

logger = get_logger(__name__)

SHODAN_API_URL = "https://api.shodan.io"
SHODAN_STREAM_URL = "https://stream.shodan.io"


def _error_message(body: str) -> str:
    """Pull the ``error`` field out of a Shodan error body if there is one."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()[:200]
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return body.strip()[:200]


class ShodanFetcher:
    """Runs Shodan host searches, one result page at a time."""

    def __init__(
        self,
        api_key: str,
        port: int = 5901,
        base_url: str = SHODAN_API_URL,
        timeout: float = 30
    ):
        """
        Initialize fetcher.

        Args:
            api_key: Shodan API key
            port: VNC port to capture on every host found
            base_url: Base URL of the Shodan REST API
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.port = port
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        """Initialize HTTP session."""
        if not self.api_key:
            raise DiscoveryError("no Shodan API key (set SHODAN_API_KEY)")
        self.session = aiohttp.ClientSession(timeout=self.timeout)
        logger.info(f"Fetcher initialized with API: {self.base_url}")

    async def shutdown(self):
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def search(self, query: str, page: int = 1) -> List[HostAddress]:
        """
        Fetch one page of search results.

        Args:
            query: Shodan search query
            page: 1-based result page

        Returns:
            Hosts on this page, in result order
        """
        params = {"key": self.api_key, "query": query, "page": page}
        try:
            async with self.session.get(
                f"{self.base_url}/shodan/host/search", params=params
            ) as response:
                body = await response.text()
                if response.status != 200:
                    raise DiscoveryError(
                        f"Shodan search returned status {response.status}: {_error_message(body)}"
                    )
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Shodan search failed: {e}") from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise DiscoveryError(f"Shodan search returned invalid JSON: {e}") from e

        hosts = [
            HostAddress(match["ip_str"], self.port)
            for match in data.get("matches", [])
            if match.get("ip_str")
        ]
        logger.info(f"Page {page}: {len(hosts)} hosts (query total {data.get('total', '?')})")
        return hosts

    async def iter_pages(self, query: str, pages: int) -> AsyncIterator[List[HostAddress]]:
        """Yield result pages 1..pages, fetching each only when asked for."""
        for page in range(1, pages + 1):
            yield await self.search(query, page)


class ShodanStream:
    """Follows the Shodan banner stream for a set of ports."""

    def __init__(
        self,
        api_key: str,
        ports: Iterable[int] = (5901,),
        banner_filter: str = "authentication disabled",
        target_port: Optional[int] = None,
        stream_url: str = SHODAN_STREAM_URL
    ):
        """
        Initialize stream.

        Args:
            api_key: Shodan API key
            ports: Ports whose banners to follow
            banner_filter: Case-insensitive text a banner must contain;
                empty accepts every banner
            target_port: Port to capture on; defaults to the banner's port
            stream_url: Base URL of the Shodan streaming API
        """
        self.api_key = api_key
        self.ports = list(ports)
        self.banner_filter = banner_filter.lower()
        self.target_port = target_port
        self.stream_url = stream_url.rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        """Initialize HTTP session. The stream has no overall deadline."""
        if not self.api_key:
            raise DiscoveryError("no Shodan API key (set SHODAN_API_KEY)")
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=30)
        )
        logger.info(f"Stream initialized for ports {self.ports}")

    async def shutdown(self):
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    def parse_banner(self, line: bytes) -> Optional[HostAddress]:
        """Turn one stream line into a host, or None if it is not wanted."""
        line = line.strip()
        if not line:
            return None

        try:
            banner: Dict[str, Any] = json.loads(line)
        except ValueError:
            logger.warning(f"Skipping malformed banner: {line[:80]!r}")
            return None

        ip = banner.get("ip_str")
        if not ip:
            return None
        if self.banner_filter and self.banner_filter not in str(banner.get("data", "")).lower():
            return None

        port = self.target_port or banner.get("port")
        if not port:
            return None
        return HostAddress(ip, int(port))

    async def hosts(self) -> AsyncIterator[HostAddress]:
        """
        Yield hosts as banners arrive.

        Ends when the server closes the stream.
        """
        ports = ",".join(str(p) for p in self.ports)
        try:
            async with self.session.get(
                f"{self.stream_url}/shodan/ports/{ports}", params={"key": self.api_key}
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise DiscoveryError(
                        f"Shodan stream returned status {response.status}: {_error_message(body)}"
                    )
                async for line in response.content:
                    host = self.parse_banner(line)
                    if host is not None:
                        yield host
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Shodan stream failed: {e}") from e

        logger.info("Shodan stream closed")


def read_host_file(path: str, default_port: int = 5901) -> List[HostAddress]:
    """
    Read a host list: one ``host``, ``host:port`` or ``[v6]:port`` per line.

    Blank lines and ``#`` comments are skipped, as are lines that do not
    parse (with a warning).
    """
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise DiscoveryError(f"cannot read host file {path}: {e}") from e

    hosts = []
    for lineno, line in enumerate(lines, 1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        try:
            hosts.append(HostAddress.parse(line, default_port))
        except ValueError as e:
            logger.warning(f"{path}:{lineno}: skipping invalid host ({e})")

    logger.info(f"Loaded {len(hosts)} hosts from {path}")
    return hosts
