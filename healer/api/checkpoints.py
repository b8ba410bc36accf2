"""
GET /checkpoints
Lists workspace checkpoints, newest first.
"""
from fastapi import APIRouter, Depends

from healer.api.dependencies import get_config
from healer.core.config import LoopConfig
from healer.services.rollback_manager import RollbackManager

router = APIRouter()


@router.get("/checkpoints")
async def get_checkpoints(config: LoopConfig = Depends(get_config)):
    manager = RollbackManager(config.rollback, config.workspace)
    return [c.model_dump(mode="json", by_alias=True) for c in manager.list_checkpoints()]
