# HTTP Helper for renderer connections
# Session configuration shared by description fetches, probes and SOAP control

import asyncio
import aiohttp
import logging
from typing import Optional

logger = logging.getLogger(__name__)

def create_device_session(timeout_seconds: float = 5) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local renderer connections (always HTTP)
    Prevents connection leaks with proper cleanup and limits
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=2,           # Renderers are small devices
        ssl=False,                  # Local renderers use HTTP only
        force_close=True,           # Force connection cleanup
        enable_cleanup_closed=True  # Additional cleanup
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )

async def probe_url(url: str, timeout_seconds: float = 1.0) -> Optional[int]:
    """
    Reachability probe: HEAD, falling back to GET when HEAD is refused
    Returns the HTTP status, or None when nothing answered
    """
    try:
        async with create_device_session(timeout_seconds) as session:
            async with session.head(url, allow_redirects=True) as response:
                status = response.status
            if status in (405, 501):
                async with session.get(url) as response:
                    status = response.status
            return status
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return None
