from fastapi import APIRouter, Depends, HTTPException, Query, status

from leadpipe.api.security import get_pipeline, require_admin_key
from leadpipe.pipeline import Pipeline
from leadpipe.schemas.activities import CrmActivityListOut, CrmActivityOut
from leadpipe.services.errors import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.get("/crm-activities", response_model=CrmActivityListOut)
async def list_crm_activities(
    pipeline: Pipeline = Depends(get_pipeline),
    activity_type: str | None = Query(default=None, alias="type"),
    property_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
) -> CrmActivityListOut:
    try:
        rows = await pipeline.repository.list_crm_activities(
            activity_type=activity_type,
            property_id=property_id,
            limit=limit,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CrmActivityListOut(data=[CrmActivityOut(**row) for row in rows], limit=limit)
