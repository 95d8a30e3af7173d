"""
Celery Tasks for Tile Pyramid Jobs

The request path stages the job (writes the "pending" marker) and hands the
rest to `build_tile_pyramid`, which runs in a worker independent of the
originating request. The task never retries: the outcome is the marker.
"""

import asyncio
from typing import Any, Dict, Optional

from src.core.celery_app import celery_app
from src.core.logging import clear_job_context, get_logger, set_job_context
from src.modules.imagery.models import TileJobSpec
from src.pipeline.tiles import TilePyramidJob

logger = get_logger(__name__)


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.build_tile_pyramid",
    max_retries=0,
    acks_late=False
)
def build_tile_pyramid(self, payload: Dict[str, Any], job_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Download, tile and upload one image.

    Args:
        payload: TileJobSpec as produced by `TileJobSpec.to_task_payload()`
        job_id: identifier assigned when the job was staged
    """
    spec = TileJobSpec.model_validate(payload)
    job = TilePyramidJob.from_spec(spec, job_id=job_id or self.request.id)
    set_job_context(job.job_id, "tiles")

    try:
        logger.info("task_tile_pyramid_started", image_key=spec.image_key, marker=job.marker)
        state = asyncio.run(job.run())
        return {
            "job_id": job.job_id,
            "state": state.value,
            "marker": job.marker,
            "uploaded": len(job.uploaded),
            "error": job.error,
        }
    finally:
        clear_job_context()
