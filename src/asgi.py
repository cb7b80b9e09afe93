"""
ASGI entry point for uvicorn
This module exposes the FastAPI app for use with uvicorn command line
"""

import logging
import os
from pathlib import Path

from config_loader import load_config, setup_logging
from services.blast_server import build_orchestrator
from api.main_api import BlastAPI

# Ensure logs directory exists
Path("logs").mkdir(exist_ok=True)

# Load configuration
config = load_config(os.environ.get('CONFIG_FILE', 'config/config.yaml'))
setup_logging(config)

logger = logging.getLogger(__name__)

logger.info("Initializing application components...")

orchestrator = build_orchestrator(config)

# Create API (which contains the FastAPI app)
api = BlastAPI(orchestrator, config)

# Expose the FastAPI app for uvicorn
app = api.app

@app.on_event("shutdown")
async def shutdown_event():
    """Stop any running blast and release the media server"""
    logger.info("Shutting down application...")
    await orchestrator.close()
    logger.info("Application shut down complete")

logger.info("ASGI app ready for uvicorn")
