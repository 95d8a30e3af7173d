"""
Image Transform Endpoint

GET|POST /api/v1/images/{operation} - Run one image operation

The image comes from a multipart `file` field, the raw request body, or a
remote object selected by query parameters (see src.modules.imagery.sources).
Transformed bytes are returned inline unless a storage destination applies,
in which case the result is stored and an empty 200 is returned.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from src.api.dependencies import get_dispatcher
from src.core.logging import get_logger
from src.modules.imagery.models import Operation
from src.pipeline.dispatcher import TransformDispatcher

logger = get_logger(__name__)
router = APIRouter()


@router.get("/operations")
async def list_operations():
    """Names accepted by /images/{operation}."""
    return {"operations": [op.value for op in Operation]}


@router.api_route("/{operation}", methods=["GET", "POST"])
async def transform_image(
    operation: str,
    request: Request,
    dispatcher: TransformDispatcher = Depends(get_dispatcher),
):
    try:
        op = Operation(operation.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown operation: {operation}")

    result = await dispatcher.dispatch(request, op)

    if result.stored is not None:
        return Response(status_code=200)

    return Response(content=result.body, media_type=result.mime, headers=result.headers)
