"""
FastAPI Dependencies

Provides dependency injection for:
- Storage provider construction (per request / per job)
- Source resolution and transform dispatch (per request)
- Tile job hand-off to the background worker
- Process health reporting
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

from fastapi import Depends, Request

from src.core.config import settings
from src.core.health import HealthReporter
from src.core.storage import build_provider, provider_for_ref
from src.modules.imagery.sources import ProviderFactory, SourceResolver
from src.pipeline.dispatcher import TransformDispatcher

TileJobEnqueuer = Callable[[Dict[str, Any], str], Awaitable[None]]


# =============================================================================
# Storage
# =============================================================================

def get_provider_factory() -> ProviderFactory:
    """Returns the factory that maps a StorageRef to a provider."""
    return provider_for_ref


def get_provider_builder() -> Callable:
    """Returns the factory that builds a provider from job parameters."""
    return build_provider


# =============================================================================
# Transforms
# =============================================================================

def get_source_resolver(
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> SourceResolver:
    return SourceResolver(provider_factory=provider_factory, account_name=settings.AZURE_ACCOUNT_NAME)


def get_dispatcher(resolver: SourceResolver = Depends(get_source_resolver)) -> TransformDispatcher:
    return TransformDispatcher(resolver)


# =============================================================================
# Tile jobs
# =============================================================================

async def enqueue_tile_job(payload: Dict[str, Any], job_id: str) -> None:
    """Send a staged job to the Celery worker."""
    from src.pipeline.tasks import build_tile_pyramid

    # .delay blocks on the broker, and runs the job inline in eager mode
    await asyncio.to_thread(build_tile_pyramid.delay, payload, job_id)


def get_tile_job_enqueuer() -> TileJobEnqueuer:
    return enqueue_tile_job


# =============================================================================
# Health
# =============================================================================

def get_health_reporter(request: Request) -> HealthReporter:
    return HealthReporter(started_at=request.app.state.started_at)
