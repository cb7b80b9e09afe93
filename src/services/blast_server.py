"""
Blast Server - wires config, discovery, control and the local API together
"""

import asyncio
import logging
from typing import Dict, Optional
import uvicorn

# Local imports
from config_loader import load_config, setup_logging
from discovery.bus import DiscoveryBus
from control.client import DeviceControlClient
from blast.media import StaticUrlMediaServer
from blast.orchestrator import BlastOrchestrator
from blast.state import BlastState
from api.main_api import BlastAPI

logger = logging.getLogger(__name__)


def build_orchestrator(config: Dict) -> BlastOrchestrator:
    """Build an orchestrator and its collaborators from an effective config"""
    blast_config = config['blast']
    bus = DiscoveryBus(config['discovery'])
    control = DeviceControlClient(config['control'])
    media_server = StaticUrlMediaServer(
        blast_config.get('media_url'),
        timeout_seconds=blast_config.get('serve_timeout_ms', 5000) / 1000,
    )
    return BlastOrchestrator(config, bus=bus, control_client=control, media_server=media_server)


class BlastServer:
    """Main server: orchestrator, event logging and the HTTP API"""

    def __init__(self, config_path: str = "config/config.yaml"):
        self.config = load_config(config_path)
        setup_logging(self.config)

        self.orchestrator = build_orchestrator(self.config)
        self.api = BlastAPI(self.orchestrator, self.config)

        self.running = False
        self.tasks = []
        self._api_server: Optional[uvicorn.Server] = None

    async def start(self):
        """Start background services, then serve the API until shutdown"""
        logger.info("Starting Renderblast Local Server...")

        try:
            self.running = True
            self.tasks = [
                asyncio.create_task(self._event_log_service()),
            ]
            logger.info(f"All services started successfully ({len(self.tasks)} background tasks)")

            await self._start_api_server()

        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all server services gracefully"""
        if not self.running:
            return
        logger.info("Stopping server...")
        self.running = False

        await self.orchestrator.close()

        if self._api_server is not None:
            self._api_server.should_exit = True

        for task in self.tasks:
            task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        logger.info("Server stopped")

    async def _event_log_service(self):
        """Log state changes and per-device outcomes from the orchestrator event stream"""
        async for event in self.orchestrator.events():
            if event.kind == "state":
                if event.data == BlastState.IDLE:
                    snapshot = self.orchestrator.metrics.snapshot
                    if snapshot.is_complete:
                        logger.info(f"[BLAST] Last run: {snapshot.outcome.value}, "
                                    f"{snapshot.successes}/{snapshot.attempts} succeeded")
            elif event.kind == "device" and event.data.result is not None:
                result = event.data.result
                if result.succeeded:
                    logger.info(f"[OK] {event.data.device.display_name} playing ({result.duration_ms}ms)")
                else:
                    logger.info(f"[FAIL] {event.data.device.display_name}: {result.error_detail}")

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        self._api_server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://localhost:{self.config['api']['port']}/docs")

        if self.config['blast'].get('media_url'):
            logger.info(f"Default media URL: {self.config['blast']['media_url']}")
        else:
            logger.info("No default media URL configured, POST /api/blast/start must supply one")

        enabled = [name for name in ('ssdp', 'mdns', 'port_scan') if self.config['discovery'][f'enable_{name}']]
        logger.info(f"[SEARCH] Discovery methods enabled: {', '.join(enabled)}")

        await self._api_server.serve()
