"""
Tile Pyramid Endpoint

POST /api/v1/tiles (alias /api/v1/dzsave) - Submit a tile pyramid job

The "pending" status marker is written before answering; the download,
tiling and upload run in the background. Poll the marker object returned in
the response to observe the outcome ("ok" or an error message).
"""

import json
from typing import Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.api.dependencies import TileJobEnqueuer, get_provider_builder, get_tile_job_enqueuer
from src.core.exceptions import JobDispatchError, MalformedRequestBodyError, MethodNotAllowedError
from src.core.logging import LogContext, get_logger
from src.core.storage import parse_provider_kind
from src.modules.imagery.models import JobMarkerState, TileJobSpec
from src.pipeline.tiles import TilePyramidJob

logger = get_logger(__name__)
router = APIRouter()

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


async def parse_job_spec(request: Request) -> TileJobSpec:
    """
    Decode the job body.

    Raises:
        MalformedRequestBodyError: unreadable JSON or invalid fields
    """
    body = await request.body()
    try:
        data = json.loads(body)
    except ValueError as e:
        raise MalformedRequestBodyError(f"could not decode job request: {e}") from e
    if not isinstance(data, dict):
        raise MalformedRequestBodyError("job request must be a JSON object")

    try:
        return TileJobSpec.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise MalformedRequestBodyError(f"invalid job request: {problems}") from e


@router.api_route("", methods=ALL_METHODS, status_code=202)
async def submit_tile_job(
    request: Request,
    provider_builder: Callable = Depends(get_provider_builder),
    enqueue: TileJobEnqueuer = Depends(get_tile_job_enqueuer),
):
    if request.method != "POST":
        raise MethodNotAllowedError(request.method, headers={"Allow": "POST"})

    spec = await parse_job_spec(request)
    kind = parse_provider_kind(spec.provider)

    provider = provider_builder(
        kind,
        zone=spec.container_zone or None,
        sas_token=spec.sas_token or None,
        account_name=spec.account_name or None,
    )
    job = TilePyramidJob(spec, provider)
    await job.stage()

    with LogContext(job_id=job.job_id, stage="dispatch"):
        try:
            await enqueue(spec.to_task_payload(), job.job_id)
        except Exception as e:
            await job.fail(e)
            raise JobDispatchError(f"could not start tile job: {e}") from e

        logger.info("tile_job_submitted", provider=kind.value, image_key=spec.image_key, marker=job.marker)

    return JSONResponse(
        status_code=202,
        content={
            "status": JobMarkerState.PENDING.value,
            "marker": job.marker,
            "job_id": job.job_id,
        },
    )
