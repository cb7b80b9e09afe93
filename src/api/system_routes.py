"""
System health and monitoring API routes
"""

from fastapi import APIRouter
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

# Response models
class HealthResponse(BaseModel):
    status: str
    state: str
    running: bool
    devices_known: int
    last_error: Optional[str] = None
    timestamp: datetime

def create_system_routes(orchestrator, config):
    """Create system monitoring routes"""
    router = APIRouter(prefix="/api", tags=["system"])

    @router.get("/system/health", response_model=HealthResponse)
    async def system_health():
        """System health check"""
        return HealthResponse(
            status="healthy",
            state=orchestrator.state.value,
            running=orchestrator.is_running,
            devices_known=len(orchestrator.devices),
            last_error=orchestrator.last_error,
            timestamp=datetime.now(timezone.utc)
        )

    @router.get("/system/config")
    async def get_effective_config():
        """Effective discovery/control/blast settings after defaults"""
        return {
            "discovery": config.get('discovery', {}),
            "control": config.get('control', {}),
            "blast": config.get('blast', {})
        }

    return router
