"""
GET /status
Persisted loop state, convergence-relevant counters and whether an
emergency stop marker is present.
"""
import os

from fastapi import APIRouter, Depends

from healer.api.dependencies import get_config
from healer.core.config import LoopConfig
from healer.state.loop_state_manager import LoopStateManager

router = APIRouter()


@router.get("/status")
async def get_status(config: LoopConfig = Depends(get_config)):
    manager = LoopStateManager(config.state, base_dir=config.workspace)
    info = manager.state_info()
    info["emergencyStop"] = os.path.exists(config.resolve(config.safety.emergency_stop_file))
    return info
