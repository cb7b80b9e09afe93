"""
Main FastAPI application setup
Local HTTP API for starting, stopping and watching renderer blasts
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict
import logging

# Import modular route factories
from .system_routes import create_system_routes
from .blast_routes import create_blast_routes

logger = logging.getLogger(__name__)


class BlastAPI:
    """Local HTTP API around a BlastOrchestrator"""

    def __init__(self, orchestrator, config: Dict):
        self.orchestrator = orchestrator
        self.config = config
        self.app = FastAPI(
            title="Renderblast Local Server",
            description="Discover network media renderers and push a clip to all of them",
            version="1.0.0"
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=config.get('api', {}).get('cors_origins', ['*']),
            allow_methods=["*"],
            allow_headers=["*"]
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes using modular approach"""
        system_router = create_system_routes(self.orchestrator, self.config)
        blast_router = create_blast_routes(self.orchestrator)

        self.app.include_router(system_router)
        self.app.include_router(blast_router)
