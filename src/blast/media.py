"""
Media server collaborator: supplies the URL renderers fetch the clip from
"""

import logging
from typing import Optional

from errors import ConfigurationError
from http_helper import probe_url

logger = logging.getLogger(__name__)


class MediaServer:
    """Interface for whatever serves the clip bytes"""

    def is_configured(self) -> bool:
        raise NotImplementedError

    async def start(self) -> str:
        """Make the media available and return its URL"""
        raise NotImplementedError

    async def stop(self):
        raise NotImplementedError


class StaticUrlMediaServer(MediaServer):
    """Media already served elsewhere; start() only checks it answers"""

    def __init__(self, media_url: Optional[str], probe: bool = True, timeout_seconds: float = 5.0):
        self.media_url = media_url
        self.probe = probe
        self.timeout_seconds = timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.media_url)

    async def start(self) -> str:
        if not self.media_url:
            raise ConfigurationError("No media URL configured (blast.media_url)")

        if self.probe:
            status = await probe_url(self.media_url, self.timeout_seconds)
            if status is None or status >= 400:
                logger.warning(f"Media URL {self.media_url} not answering cleanly (status {status}), renderers may fail to fetch it")
            else:
                logger.info(f"Media URL {self.media_url} ready (HTTP {status})")
        return self.media_url

    async def stop(self):
        logger.debug("Static media server has nothing to stop")
