"""
Image Source Resolution

Decides where a transform request's image comes from and where its output
goes. Backends are selected from query parameters in a fixed priority:

1. s3key                      -> S3 bucket store (s3bucket, s3region)
2. azuresastoken + azureblobkey -> Azure with SAS token
3. azureblobkey               -> primary Azure account
4. none of the above          -> inline upload (multipart `file` or raw body)

A bucket key wins when both S3 and Azure parameters are present.
"""

import posixpath
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from starlette.datastructures import UploadFile

from src.core.config import settings
from src.core.exceptions import (
    DownloadError,
    EmptyBodyError,
    MissingSourceError,
    PayloadTooLargeError,
    StorageError,
)
from src.core.logging import get_logger
from src.core.storage import ProviderKind, StorageProvider, StorageRef, provider_for_ref

logger = get_logger(__name__)

SAS_TOKEN_HEADER = "X-Azure-SAS-Token"

ProviderFactory = Callable[[StorageRef], StorageProvider]


@dataclass(frozen=True)
class BackendParams:
    """Backend-selecting parameters of one request."""
    s3_key: str = ""
    s3_bucket: str = ""
    s3_region: str = ""
    s3_output_key: str = ""
    azure_container: str = ""
    azure_blob_key: str = ""
    azure_output_key: str = ""
    sas_token: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "BackendParams":
        q = request.query_params
        return cls(
            s3_key=q.get("s3key", "").strip(),
            s3_bucket=q.get("s3bucket", "").strip(),
            s3_region=q.get("s3region", "").strip(),
            s3_output_key=q.get("s3outputkey", "").strip(),
            azure_container=q.get("azurecontainer", "").strip(),
            azure_blob_key=q.get("azureblobkey", "").strip(),
            azure_output_key=q.get("azureoutputkey", "").strip(),
            sas_token=(q.get("azuresastoken") or request.headers.get(SAS_TOKEN_HEADER, "")).strip(),
        )


@dataclass
class ResolvedSource:
    """Image bytes plus, for remote sources, where they came from."""
    data: bytes
    ref: Optional[StorageRef] = None
    provider: Optional[StorageProvider] = None


def derive_output_key(source_key: str, operation: str, extension: Optional[str] = None) -> str:
    """`<dir>/<stem>_<operation>.<ext>`, keeping the source extension if none is given."""
    key_dir, name = posixpath.split(source_key)
    stem, source_ext = posixpath.splitext(name)
    ext = f".{extension}" if extension else source_ext
    return posixpath.join(key_dir, f"{stem}_{operation}{ext}")


class SourceResolver:
    """Maps request parameters onto storage references and providers."""

    def __init__(
        self,
        provider_factory: ProviderFactory = provider_for_ref,
        account_name: Optional[str] = None,
    ):
        self.provider_factory = provider_factory
        self.account_name = account_name or settings.AZURE_ACCOUNT_NAME

    def _ref(self, params: BackendParams, key: str) -> Optional[StorageRef]:
        """Reference to `key` on the backend the params select, in priority order."""
        if params.s3_key:
            if not params.s3_bucket:
                raise MissingSourceError("Missing required param: s3bucket")
            return StorageRef(
                provider_kind=ProviderKind.S3,
                container=params.s3_bucket,
                key=key,
                region=params.s3_region or None,
            )

        if params.azure_blob_key:
            if not params.azure_container:
                raise MissingSourceError("Missing required param: azurecontainer")
            if params.sas_token:
                return StorageRef(
                    provider_kind=ProviderKind.AZURE_SAS,
                    container=params.azure_container,
                    key=key,
                    account_name=self.account_name,
                    credential=params.sas_token,
                )
            return StorageRef(
                provider_kind=ProviderKind.AZURE,
                container=params.azure_container,
                key=key,
            )

        return None

    def select_source(self, params: BackendParams) -> Optional[StorageRef]:
        """The remote source for these params, or None for an inline upload."""
        if params.s3_key:
            return self._ref(params, params.s3_key)
        return self._ref(params, params.azure_blob_key)

    def resolve_destination(
        self,
        params: BackendParams,
        operation: str,
        extension: Optional[str] = None,
    ) -> Optional[StorageRef]:
        """
        Where the transformed image is stored, or None to answer inline.

        A remote source always implies a remote destination on the same
        backend. Inline uploads are stored only when output parameters are
        given explicitly.
        """
        if params.s3_key or (params.s3_output_key and params.s3_bucket):
            key = params.s3_output_key or derive_output_key(params.s3_key, operation, extension)
            return StorageRef(
                provider_kind=ProviderKind.S3,
                container=params.s3_bucket,
                key=key,
                region=params.s3_region or None,
            )

        if params.azure_blob_key or (params.azure_output_key and params.azure_container):
            if not params.azure_container:
                raise MissingSourceError("Missing required param: azurecontainer")
            key = params.azure_output_key or derive_output_key(params.azure_blob_key, operation, extension)
            if params.sas_token:
                return StorageRef(
                    provider_kind=ProviderKind.AZURE_SAS,
                    container=params.azure_container,
                    key=key,
                    account_name=self.account_name,
                    credential=params.sas_token,
                )
            return StorageRef(
                provider_kind=ProviderKind.AZURE,
                container=params.azure_container,
                key=key,
            )

        return None

    async def _read_inline(self, request: Request) -> bytes:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("multipart/form-data"):
            form = await request.form()
            upload = form.get("file")
            if not isinstance(upload, UploadFile):
                return b""
            data = await upload.read()
        else:
            data = await request.body()

        if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
            raise PayloadTooLargeError(len(data), settings.MAX_IMAGE_SIZE_BYTES)
        return data

    async def resolve(self, request: Request, params: Optional[BackendParams] = None) -> ResolvedSource:
        """
        Obtain the request's image.

        Raises:
            MissingSourceError: no backend parameters and an empty body
            EmptyBodyError: the remote object is empty
            StorageError: the remote fetch failed
        """
        params = params or BackendParams.from_request(request)
        ref = self.select_source(params)

        if ref is None:
            data = await self._read_inline(request)
            if not data:
                raise MissingSourceError()
            return ResolvedSource(data=data)

        provider = self.provider_factory(ref)
        logger.info("source_fetch", source=str(ref))
        data = await provider.fetch(ref.container, ref.key)
        if not data:
            raise EmptyBodyError()
        return ResolvedSource(data=data, ref=ref, provider=provider)

    async def fetch_reference(
        self,
        params: BackendParams,
        key: str,
        provider: Optional[StorageProvider] = None,
    ) -> bytes:
        """
        Fetch a secondary asset (an overlay) from the request's backend.

        Raises:
            DownloadError: no backend selected, or the fetch failed
        """
        if not key:
            raise DownloadError("Missing required param: image")

        try:
            ref = self._ref(params, key)
        except MissingSourceError as e:
            raise DownloadError(e.message) from e
        if ref is None:
            raise DownloadError("no storage backend parameters given")

        try:
            provider = provider or self.provider_factory(ref)
            data = await provider.fetch(ref.container, ref.key)
        except StorageError as e:
            raise DownloadError(e.message) from e
        if not data:
            raise DownloadError(f"{ref.container}/{ref.key} is empty")
        return data
