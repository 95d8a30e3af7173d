"""
Storage Abstraction Layer - The Bridge Pattern

One capability contract (fetch/store by container and key) with a concrete
provider per backend and authentication scheme:

- AzureBlobProvider: primary Azure account, static credential from settings
- AzureSASProvider: Azure account addressed with a caller-supplied SAS token
- S3BucketProvider: S3-compatible bucket store in a configurable region

Callers hold a StorageProvider and never branch on the concrete type. The
blocking SDK calls run in worker threads so one provider instance can serve
many concurrent fetch/store coroutines.
"""

import asyncio
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobClient, BlobServiceClient, ContentSettings

from src.core.config import settings
from src.core.exceptions import (
    ObjectNotFoundError,
    RemoteIOError,
    StorageError,
    UnknownProviderError,
)
from src.core.logging import get_logger
from src.core.metrics import record_storage_call

logger = get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ProviderKind(str, Enum):
    """Backend identifiers as they appear on the wire."""
    AZURE = "azure"
    AZURE_SAS = "azureSAS"
    S3 = "s3"


@dataclass(frozen=True)
class StorageRef:
    """Identifies exactly one remote object."""
    provider_kind: ProviderKind
    container: str
    key: str
    region: Optional[str] = None
    account_name: Optional[str] = None
    credential: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.provider_kind.value}://{self.container}/{self.key}"


def guess_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or DEFAULT_CONTENT_TYPE


class StorageProvider(ABC):
    """
    Interface for remote object storage - The Bridge.

    Each call performs exactly one round trip. There is no retry at this
    layer; callers decide whether a failure is worth repeating.
    """

    kind: ProviderKind

    async def fetch(self, container: str, key: str) -> bytes:
        """
        Download an object.

        Raises:
            ObjectNotFoundError: the object does not exist
            RemoteIOError: network, auth or backend failure
        """
        try:
            data = await asyncio.to_thread(self._fetch, container, key)
        except StorageError:
            record_storage_call(self.kind.value, "fetch", "error")
            raise
        record_storage_call(self.kind.value, "fetch", "success")
        logger.debug("object_fetched", provider=self.kind.value, container=container, key=key, size=len(data))
        return data

    async def store(self, data: bytes, key: str, container: str) -> None:
        """
        Upload an object, overwriting whatever is stored under the key.

        Raises:
            RemoteIOError: network, auth or backend failure
        """
        try:
            await asyncio.to_thread(self._store, data, key, container)
        except StorageError:
            record_storage_call(self.kind.value, "store", "error")
            raise
        record_storage_call(self.kind.value, "store", "success")
        logger.debug("object_stored", provider=self.kind.value, container=container, key=key, size=len(data))

    @abstractmethod
    def _fetch(self, container: str, key: str) -> bytes:
        pass

    @abstractmethod
    def _store(self, data: bytes, key: str, container: str) -> None:
        pass


# =============================================================================
# Azure Blob Storage
# =============================================================================

def _read_blob(blob: BlobClient, container: str, key: str, kind: ProviderKind) -> bytes:
    try:
        return blob.download_blob().readall()
    except ResourceNotFoundError:
        raise ObjectNotFoundError(container, key, provider=kind.value)
    except AzureError as e:
        raise RemoteIOError(
            f"Error downloading {container}/{key}: {e}", provider=kind.value
        ) from e


def _write_blob(blob: BlobClient, data: bytes, container: str, key: str, kind: ProviderKind) -> None:
    try:
        blob.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=guess_content_type(key))
        )
    except AzureError as e:
        raise RemoteIOError(
            f"Error uploading {container}/{key}: {e}", provider=kind.value
        ) from e


class AzureBlobProvider(StorageProvider):
    """Primary Azure account authenticated with the service's own credential."""

    kind = ProviderKind.AZURE

    def __init__(
        self,
        connection_string: Optional[str] = None,
        account_name: Optional[str] = None,
        account_key: Optional[str] = None,
        client: Optional[BlobServiceClient] = None,
    ):
        if client is not None:
            self._client = client
            return

        connection_string = connection_string or settings.AZURE_STORAGE_CONNECTION_STRING
        account_name = account_name or settings.AZURE_ACCOUNT_NAME
        account_key = account_key or settings.AZURE_ACCOUNT_KEY

        if connection_string:
            self._client = BlobServiceClient.from_connection_string(connection_string)
        elif account_name and account_key:
            self._client = BlobServiceClient(
                account_url=f"https://{account_name}.{settings.AZURE_BLOB_ENDPOINT_SUFFIX}",
                credential={"account_name": account_name, "account_key": account_key},
            )
        else:
            raise StorageError(
                "Azure storage is not configured: set AZURE_STORAGE_CONNECTION_STRING "
                "or AZURE_ACCOUNT_NAME and AZURE_ACCOUNT_KEY",
                code=500,
                provider=self.kind.value,
            )

    def _fetch(self, container: str, key: str) -> bytes:
        blob = self._client.get_blob_client(container=container, blob=key)
        return _read_blob(blob, container, key, self.kind)

    def _store(self, data: bytes, key: str, container: str) -> None:
        blob = self._client.get_blob_client(container=container, blob=key)
        _write_blob(blob, data, container, key, self.kind)


class AzureSASProvider(StorageProvider):
    """Azure account addressed through a caller-supplied shared access signature."""

    kind = ProviderKind.AZURE_SAS

    def __init__(self, sas_token: str, account_name: Optional[str] = None):
        account_name = account_name or settings.AZURE_ACCOUNT_NAME
        if not sas_token:
            raise StorageError("SAS token is required", code=400, provider=self.kind.value)
        if not account_name:
            raise StorageError(
                "Account name is required with a SAS token", code=400, provider=self.kind.value
            )
        self.account_name = account_name
        self._sas_token = sas_token.lstrip("?")

    def blob_url(self, container: str, key: str) -> str:
        return (
            f"https://{self.account_name}.{settings.AZURE_BLOB_ENDPOINT_SUFFIX}/"
            f"{quote(container)}/{quote(key)}?{self._sas_token}"
        )

    def _fetch(self, container: str, key: str) -> bytes:
        blob = BlobClient.from_blob_url(self.blob_url(container, key))
        return _read_blob(blob, container, key, self.kind)

    def _store(self, data: bytes, key: str, container: str) -> None:
        blob = BlobClient.from_blob_url(self.blob_url(container, key))
        _write_blob(blob, data, container, key, self.kind)


# =============================================================================
# S3-Compatible Bucket Store
# =============================================================================

class S3BucketProvider(StorageProvider):
    """
    S3-compatible bucket store scoped to one region.

    Credentials come from the standard AWS chain (environment, profile,
    instance role). Works with MinIO or Ceph when S3_ENDPOINT_URL is set.
    """

    kind = ProviderKind.S3

    def __init__(self, region: Optional[str] = None, client=None):
        self.region = region or settings.S3_DEFAULT_REGION
        if client is not None:
            self._client = client
            return

        try:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                endpoint_url=settings.S3_ENDPOINT_URL,
                config=Config(
                    signature_version="s3v4",
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to initialize S3 client: {e}", code=500, provider=self.kind.value
            ) from e

    def _fetch(self, container: str, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=container, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise ObjectNotFoundError(container, key, provider=self.kind.value)
            raise RemoteIOError(
                f"Error downloading {container}/{key}: {e}", provider=self.kind.value
            ) from e
        except BotoCoreError as e:
            raise RemoteIOError(
                f"Error downloading {container}/{key}: {e}", provider=self.kind.value
            ) from e

    def _store(self, data: bytes, key: str, container: str) -> None:
        try:
            self._client.put_object(
                Bucket=container,
                Key=key,
                Body=data,
                ContentType=guess_content_type(key),
            )
        except (BotoCoreError, ClientError) as e:
            raise RemoteIOError(
                f"Error uploading {container}/{key}: {e}", provider=self.kind.value
            ) from e


# =============================================================================
# Factory
# =============================================================================

def parse_provider_kind(value: Union[str, ProviderKind, None]) -> ProviderKind:
    """Map a wire identifier to a ProviderKind; empty means the primary backend."""
    if isinstance(value, ProviderKind):
        return value
    if not value:
        return ProviderKind.AZURE
    try:
        return ProviderKind(value)
    except ValueError:
        raise UnknownProviderError(value)


def build_provider(
    kind: Union[str, ProviderKind, None],
    zone: Optional[str] = None,
    sas_token: Optional[str] = None,
    account_name: Optional[str] = None,
) -> StorageProvider:
    """Construct the provider for one request or job."""
    kind = parse_provider_kind(kind)

    if kind is ProviderKind.S3:
        return S3BucketProvider(region=zone)
    if kind is ProviderKind.AZURE_SAS:
        return AzureSASProvider(sas_token=sas_token or "", account_name=account_name)
    return AzureBlobProvider()


def provider_for_ref(ref: StorageRef) -> StorageProvider:
    return build_provider(
        ref.provider_kind,
        zone=ref.region,
        sas_token=ref.credential,
        account_name=ref.account_name,
    )
