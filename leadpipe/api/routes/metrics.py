from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from leadpipe.api.security import get_pipeline, require_admin_key
from leadpipe.pipeline import Pipeline
from leadpipe.services.errors import RepositoryUnavailableError

router = APIRouter()


@router.get("/metrics", dependencies=[Depends(require_admin_key)])
async def get_metrics(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    try:
        return await pipeline.snapshot()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
