"""
Tile Pyramid Job

Turns one large image into a Deep Zoom tile pyramid and uploads every file
back to storage, reporting progress through a status marker object stored
next to the image as `<dir>/<name>.txt`:

    Created -> Staged -> Downloaded -> Tiled -> Uploading -> Done
                 |           |           |          |
                 +-----------+-----------+----------+-----> Failed

The marker reads "pending" once staged, "ok" after every upload succeeded,
and the error message after any failure. Staging runs on the request path;
everything after it runs in the background (see src.pipeline.tasks).

A failed upload fails the job, but sibling uploads are not cancelled and
files that already reached storage stay there.
"""

import asyncio
import os
import posixpath
import tempfile
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from src.core.config import settings
from src.core.exceptions import ImageryBaseException, RemoteIOError, ToolInvocationError
from src.core.logging import LogContext, get_logger, stage_var, with_logging
from src.core.metrics import record_job_completion, record_job_started, record_tile_upload
from src.core.storage import StorageProvider, build_provider
from src.modules.imagery.models import JobMarkerState, TileJobSpec, TileJobState

logger = get_logger(__name__)

Tiler = Callable[[str, str], Awaitable[None]]

TILE_DIR_SUFFIX = "_files"
INDEX_SUFFIX = ".dzi"


async def run_dzsave(image_path: str, output_base: str, binary: Optional[str] = None) -> None:
    """
    Invoke `vips dzsave <image> <output_base>`.

    Produces `<output_base>.dzi` and the `<output_base>_files/` tile tree.

    Raises:
        ToolInvocationError: the tool is missing or exited non-zero
    """
    binary = binary or settings.TILE_TOOL_BINARY
    try:
        process = await asyncio.create_subprocess_exec(
            binary, "dzsave", image_path, output_base,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ToolInvocationError(f"could not start {binary}: {e}") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise ToolInvocationError(
            f"{binary} dzsave exited with status {process.returncode}: {message}",
            returncode=process.returncode,
        )


class TilePyramidJob:
    """One tile pyramid job bound to one provider instance for its lifetime."""

    def __init__(
        self,
        spec: TileJobSpec,
        provider: StorageProvider,
        job_id: Optional[str] = None,
        tiler: Optional[Tiler] = None,
        staging_root: Optional[str] = None,
        upload_concurrency: Optional[int] = None,
    ):
        self.spec = spec
        self.provider = provider
        self.job_id = job_id or uuid.uuid4().hex
        self.tiler = tiler or run_dzsave
        self.staging_root = staging_root or settings.TILE_STAGING_DIR
        self.upload_concurrency = max(1, upload_concurrency or settings.TILE_UPLOAD_CONCURRENCY)
        self.state = TileJobState.CREATED
        self.staging_dir: Optional[str] = None
        self.error: Optional[str] = None
        self.uploaded: List[str] = []

    @classmethod
    def from_spec(cls, spec: TileJobSpec, **kwargs) -> "TilePyramidJob":
        provider = build_provider(
            spec.provider,
            zone=spec.container_zone or None,
            sas_token=spec.sas_token or None,
            account_name=spec.account_name or None,
        )
        return cls(spec, provider, **kwargs)

    @property
    def marker(self) -> str:
        return f"{self.spec.temp_container}/{self.spec.status_key}"

    def _transition(self, state: TileJobState):
        self.state = state
        stage_var.set(state.value)
        logger.info("tile_job_state", state=state.value, marker=self.marker)

    async def write_marker(self, body: str):
        await self.provider.store(body.encode("utf-8"), self.spec.status_key, self.spec.temp_container)

    # =========================================================================
    # Request path
    # =========================================================================

    async def stage(self):
        """
        Write the "pending" marker. Failures propagate to the caller, since
        the job has not been handed to the background yet.
        """
        with LogContext(job_id=self.job_id, stage=TileJobState.CREATED.value):
            await self.write_marker(JobMarkerState.PENDING.value)
            self._transition(TileJobState.STAGED)

    # =========================================================================
    # Background path
    # =========================================================================

    @with_logging("download")
    async def download(self) -> bytes:
        try:
            data = await self.provider.fetch(self.spec.container, self.spec.image_key)
        except ImageryBaseException as e:
            raise RemoteIOError(f"error downloading image: {e.message}") from e
        self._transition(TileJobState.DOWNLOADED)
        return data

    @with_logging("tiling")
    async def generate_tiles(self, staging_dir: str, data: bytes) -> Tuple[str, str]:
        """Write the source next to its tiles and run the tiler. Returns (index, tile dir)."""
        name = self.spec.image_name
        image_path = os.path.join(staging_dir, name + self.spec.extension)
        output_base = os.path.join(staging_dir, name)

        await asyncio.to_thread(Path(image_path).write_bytes, data)
        await self.tiler(image_path, output_base)

        index_path = output_base + INDEX_SUFFIX
        tiles_dir = output_base + TILE_DIR_SUFFIX
        if not os.path.isfile(index_path):
            raise ToolInvocationError(f"tiler produced no index file {name}{INDEX_SUFFIX}")
        if not os.path.isdir(tiles_dir):
            raise ToolInvocationError(f"tiler produced no tile directory {name}{TILE_DIR_SUFFIX}")

        self._transition(TileJobState.TILED)
        return index_path, tiles_dir

    def collect_files(self, staging_dir: str, index_path: str, tiles_dir: str) -> List[Tuple[str, str]]:
        """(local path, remote key) for the index plus every file under the tile tree."""
        files = [(index_path, self.spec.index_key)]
        for root, dirs, names in os.walk(tiles_dir):
            dirs.sort()
            for name in sorted(names):
                path = os.path.join(root, name)
                relative = os.path.relpath(path, staging_dir).replace(os.sep, "/")
                files.append((path, posixpath.join(self.spec.key_dir, relative)))
        return files

    @with_logging("upload")
    async def upload_all(self, files: List[Tuple[str, str]]):
        """
        Upload every file concurrently, at most `upload_concurrency` at a time.

        Waits for all uploads; raises the first failure in launch order.
        """
        self._transition(TileJobState.UPLOADING)
        semaphore = asyncio.Semaphore(self.upload_concurrency)

        async def upload(path: str, key: str):
            async with semaphore:
                try:
                    data = await asyncio.to_thread(Path(path).read_bytes)
                    await self.provider.store(data, key, self.spec.temp_container)
                except Exception as e:
                    record_tile_upload("error")
                    logger.warning("tile_upload_failed", key=key, error=str(e))
                    message = e.message if isinstance(e, ImageryBaseException) else str(e)
                    raise RemoteIOError(f"error uploading file {key}: {message}") from e
                record_tile_upload("success")
                self.uploaded.append(key)

        results = await asyncio.gather(
            *(upload(path, key) for path, key in files),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error("tile_upload_incomplete", failed=len(errors), uploaded=len(self.uploaded), total=len(files))
            raise errors[0]

        logger.info("tile_upload_completed", uploaded=len(self.uploaded))

    async def fail(self, error: Exception):
        """Record a terminal failure in the marker. Never raises."""
        self.error = error.message if isinstance(error, ImageryBaseException) else str(error)
        failed_stage = self.state.value
        self._transition(TileJobState.FAILED)
        logger.error("tile_job_failed", failed_stage=failed_stage, error=self.error, error_type=type(error).__name__)
        try:
            await self.write_marker(self.error)
        except Exception as e:
            logger.error("tile_marker_write_failed", error=str(e))

    async def run(self) -> TileJobState:
        """Everything after staging. Always returns; failures end up in the marker."""
        start = time.monotonic()
        record_job_started()

        with LogContext(job_id=self.job_id, stage=self.state.value):
            try:
                with tempfile.TemporaryDirectory(prefix="dzfiles-", dir=self.staging_root) as staging_dir:
                    self.staging_dir = staging_dir
                    data = await self.download()
                    index_path, tiles_dir = await self.generate_tiles(staging_dir, data)
                    await self.upload_all(self.collect_files(staging_dir, index_path, tiles_dir))

                await self.write_marker(JobMarkerState.OK.value)
                self._transition(TileJobState.DONE)
            except Exception as e:
                failed_stage = self.state.value
                await self.fail(e)
                record_job_completion("failed", time.monotonic() - start, failure_stage=failed_stage)
                return self.state

        record_job_completion("completed", time.monotonic() - start)
        logger.info("tile_job_completed", job_id=self.job_id, files=len(self.uploaded))
        return self.state
