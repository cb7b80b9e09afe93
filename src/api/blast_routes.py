"""
Blast control API routes: start/stop/discover, single-device blast, metrics and devices
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import logging

from blast.state import BlastCommand
from errors import ConfigurationError, InvalidStateTransition

logger = logging.getLogger(__name__)

# Request/response models
class StartBlastRequest(BaseModel):
    media_url: Optional[str] = None
    reuse_discovered: bool = False

class DiscoverRequest(BaseModel):
    timeout_ms: Optional[int] = None

class SingleDeviceRequest(BaseModel):
    ip: str
    port: int
    media_url: Optional[str] = None

class CommandResponse(BaseModel):
    accepted: bool
    state: str
    message: str
    timestamp: datetime

class ControlResultResponse(BaseModel):
    ip_address: str
    port: int
    succeeded: bool
    duration_ms: int
    error_detail: Optional[str] = None
    failed_action: Optional[str] = None

class DevicesResponse(BaseModel):
    state: str
    count: int
    devices: List[Dict[str, Any]]

def create_blast_routes(orchestrator):
    """Create blast control routes"""
    router = APIRouter(prefix="/api", tags=["blast"])

    def _command_response(message: str) -> CommandResponse:
        return CommandResponse(
            accepted=True,
            state=orchestrator.state.value,
            message=message,
            timestamp=datetime.now(timezone.utc)
        )

    @router.get("/blast/state")
    async def get_state():
        """Current orchestrator state"""
        return {"state": orchestrator.state.value, "running": orchestrator.is_running}

    @router.post("/blast/start", response_model=CommandResponse, status_code=202)
    async def start_blast(request: StartBlastRequest):
        """Start a full blast in the background"""
        try:
            await orchestrator.handle_command(BlastCommand.START, media_url=request.media_url,
                                              reuse_discovered=request.reuse_discovered)
            return _command_response("Blast started")
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error starting blast: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/blast/stop", response_model=CommandResponse)
    async def stop_blast():
        """Stop whatever is running and return to idle"""
        try:
            await orchestrator.handle_command(BlastCommand.STOP)
            return _command_response("Stopped")
        except Exception as e:
            logger.error(f"Error stopping blast: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/blast/discover", response_model=CommandResponse, status_code=202)
    async def discover_only(request: DiscoverRequest):
        """Run discovery without controlling anything"""
        try:
            await orchestrator.handle_command(BlastCommand.DISCOVER_ONLY, timeout_ms=request.timeout_ms)
            return _command_response("Discovery started")
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error starting discovery: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/blast/device", response_model=ControlResultResponse)
    async def blast_single_device(request: SingleDeviceRequest):
        """Push the clip to a single device"""
        try:
            result = await orchestrator.blast_single_device(request.ip, request.port, request.media_url)
            return ControlResultResponse(**result.to_dict())
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error blasting {request.ip}:{request.port}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/blast/metrics")
    async def get_metrics():
        """Current metrics snapshot"""
        return orchestrator.metrics.snapshot.to_dict()

    @router.get("/devices", response_model=DevicesResponse)
    async def get_devices():
        """Known devices with their blast status"""
        devices = orchestrator.device_list()
        return DevicesResponse(state=orchestrator.state.value, count=len(devices), devices=devices)

    @router.post("/discovery/cache/clear", response_model=CommandResponse)
    async def clear_discovery_cache():
        """Force the next discovery to hit the network"""
        orchestrator.bus.clear_cache()
        return _command_response("Discovery cache cleared")

    return router
