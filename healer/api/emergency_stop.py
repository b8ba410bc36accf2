"""
POST /emergency-stop    create the stop marker; the running loop halts on its next poll
DELETE /emergency-stop  remove the marker
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from healer.api.dependencies import get_config
from healer.core.config import LoopConfig
from healer.services.safety_mechanisms import SafetyMechanisms

router = APIRouter()


class EmergencyStopRequest(BaseModel):
    reason: str = "manual stop via API"


@router.post("/emergency-stop")
async def create_emergency_stop(
    request: Optional[EmergencyStopRequest] = None,
    config: LoopConfig = Depends(get_config),
):
    reason = (request or EmergencyStopRequest()).reason
    safety = SafetyMechanisms(config.safety, config.workspace)
    path = safety.create_emergency_stop(reason)
    return {"created": True, "path": path, "reason": reason}


@router.delete("/emergency-stop")
async def clear_emergency_stop(config: LoopConfig = Depends(get_config)):
    safety = SafetyMechanisms(config.safety, config.workspace)
    return {"removed": safety.clear_emergency_stop()}
