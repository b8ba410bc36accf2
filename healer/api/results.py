"""
GET /results
Returns the results.json written at the end of the last run.
"""
from fastapi import APIRouter, Depends, HTTPException

from healer.api.dependencies import get_config
from healer.core.config import LoopConfig
from healer.services.results_writer import ResultsWriter

router = APIRouter()


@router.get("/results")
async def get_results(config: LoopConfig = Depends(get_config)):
    results = ResultsWriter.read_results(config.resolve(config.results_path))
    if results is None:
        raise HTTPException(status_code=404, detail="No results available yet")
    return results
