"""
Transform Dispatcher

Runs one image operation for an HTTP request and routes the output:

- S3 destination     -> store, answer 200 with no body
- Azure destination  -> store, answer 200 with no body
- otherwise          -> answer inline with the transformed bytes

The route is decided by which destination parameters are present.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from fastapi import Request
from pydantic import ValidationError

from src.core.exceptions import InvalidParametersError, TransformError
from src.core.logging import get_logger
from src.core.metrics import record_transform, track_transform_latency
from src.core.storage import StorageRef
from src.engines.imaging import operations
from src.modules.imagery.content import resolve_output_format, validate_image_payload
from src.modules.imagery.models import (
    FORMAT_EXTENSIONS,
    ImageOptions,
    ImageResult,
    Operation,
    TransformRequest,
)
from src.modules.imagery.sources import BackendParams, ResolvedSource, SourceResolver

logger = get_logger(__name__)

Engine = Callable[..., ImageResult]


@dataclass
class DispatchResult:
    """What the endpoint should send back."""
    body: Optional[bytes] = None
    mime: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    stored: Optional[StorageRef] = None


def parse_options(request: Request) -> ImageOptions:
    try:
        return ImageOptions.model_validate(dict(request.query_params))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidParametersError(problems) from e


def requested_type(operation: Operation, options: ImageOptions) -> str:
    """The `type` to encode with; a pipeline without one uses its last step's."""
    if operation is Operation.PIPELINE and not options.type and options.operations:
        return options.operations[-1].params.type
    return options.type


class TransformDispatcher:
    """Glue between source resolution, content checks, the engine and storage."""

    def __init__(self, resolver: SourceResolver, engine: Engine = operations.run):
        self.resolver = resolver
        self.engine = engine

    async def build_request(
        self,
        request: Request,
        operation: Operation,
        params: BackendParams,
        source: ResolvedSource,
    ) -> TransformRequest:
        """Validate the payload and parameters into an immutable TransformRequest."""
        input_mime = validate_image_payload(source.data)
        options = parse_options(request)
        negotiation = resolve_output_format(requested_type(operation, options), request.headers.get("accept"))

        destination = None
        if operation is not Operation.INFO:
            extension = FORMAT_EXTENSIONS.get(negotiation.output_format) if negotiation.output_format else None
            destination = self.resolver.resolve_destination(params, operation.value, extension)

        return TransformRequest(
            input_bytes=source.data,
            input_mime=input_mime,
            operation=operation,
            options=options,
            output_format=negotiation.output_format,
            negotiated=negotiation.vary is not None,
            source=source.ref,
            destination=destination,
        )

    async def dispatch(self, request: Request, operation: Operation) -> DispatchResult:
        params = BackendParams.from_request(request)
        source = await self.resolver.resolve(request, params)
        transform = await self.build_request(request, operation, params, source)
        vary = {"Vary": "Accept"} if transform.negotiated else {}

        overlay = None
        if operation is Operation.WATERMARK_IMAGE:
            overlay = await self.resolver.fetch_reference(params, transform.options.image, source.provider)

        try:
            with track_transform_latency(operation.value):
                image = await asyncio.to_thread(
                    self.engine,
                    operation,
                    transform.input_bytes,
                    transform.options,
                    transform.output_format,
                    overlay,
                )
        except TransformError as e:
            e.headers.update(vary)
            record_transform(operation.value, "error")
            raise

        logger.info(
            "transform_completed",
            operation=operation.value,
            input_mime=transform.input_mime,
            output_mime=image.mime,
            negotiated=transform.negotiated,
            size=len(image.body),
        )

        destination = transform.destination
        if destination is not None:
            await self.store(image, destination, source)
            record_transform(operation.value, "success", route=destination.provider_kind.value)
            return DispatchResult(stored=destination)

        record_transform(operation.value, "success")
        headers = {"Content-Length": str(len(image.body))}
        headers.update(vary)
        return DispatchResult(body=image.body, mime=image.mime, headers=headers)

    async def store(self, image: ImageResult, destination: StorageRef, source: ResolvedSource):
        provider = source.provider
        if provider is None or source.ref is None or source.ref.provider_kind is not destination.provider_kind:
            provider = self.resolver.provider_factory(destination)

        await provider.store(image.body, destination.key, destination.container)
        logger.info("transform_stored", destination=str(destination), size=len(image.body))
