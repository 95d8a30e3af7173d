import pytest
from starlette.requests import Request

from src.core.exceptions import DownloadError, MissingSourceError, ObjectNotFoundError
from src.core.storage import ProviderKind
from src.modules.imagery.sources import BackendParams, SourceResolver, derive_output_key


def make_request(query: str = "", body: bytes = b"", headers=None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/images/resize",
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def params_for(query: str, headers=None) -> BackendParams:
    return BackendParams.from_request(make_request(query, headers=headers))


@pytest.fixture
def resolver(memory_provider):
    return SourceResolver(provider_factory=lambda ref: memory_provider, account_name="acct")


def test_bucket_key_selects_s3(resolver):
    ref = resolver.select_source(params_for("s3key=a/b.png&s3bucket=bucket&s3region=eu-west-1"))
    assert ref.provider_kind is ProviderKind.S3
    assert (ref.container, ref.key, ref.region) == ("bucket", "a/b.png", "eu-west-1")


def test_bucket_key_wins_over_azure_params(resolver):
    ref = resolver.select_source(params_for(
        "s3key=a.png&s3bucket=bucket&azurecontainer=c&azureblobkey=b.png&azuresastoken=sig"
    ))
    assert ref.provider_kind is ProviderKind.S3


def test_sas_token_selects_sas_provider(resolver):
    ref = resolver.select_source(params_for("azurecontainer=c&azureblobkey=b.png&azuresastoken=sv%3D1"))
    assert ref.provider_kind is ProviderKind.AZURE_SAS
    assert ref.credential == "sv=1"
    assert ref.account_name == "acct"


def test_sas_token_from_header(resolver):
    ref = resolver.select_source(params_for(
        "azurecontainer=c&azureblobkey=b.png", headers={"X-Azure-SAS-Token": "sv=2"}
    ))
    assert ref.provider_kind is ProviderKind.AZURE_SAS
    assert ref.credential == "sv=2"


def test_blob_key_alone_selects_primary_azure(resolver):
    ref = resolver.select_source(params_for("azurecontainer=c&azureblobkey=dir/b.png"))
    assert ref.provider_kind is ProviderKind.AZURE
    assert (ref.container, ref.key) == ("c", "dir/b.png")


def test_no_backend_params_means_inline(resolver):
    assert resolver.select_source(params_for("width=10")) is None


def test_bucket_key_requires_bucket(resolver):
    with pytest.raises(MissingSourceError):
        resolver.select_source(params_for("s3key=a.png"))


@pytest.mark.asyncio
async def test_resolve_without_body_or_params(resolver):
    with pytest.raises(MissingSourceError) as exc_info:
        await resolver.resolve(make_request("width=10"))
    assert exc_info.value.code == 400


@pytest.mark.asyncio
async def test_resolve_inline_body(resolver, png_bytes):
    source = await resolver.resolve(make_request("width=10", body=png_bytes))
    assert source.data == png_bytes
    assert source.ref is None


@pytest.mark.asyncio
async def test_resolve_remote_object(resolver, memory_provider, png_bytes):
    memory_provider.objects[("c", "dir/b.png")] = png_bytes
    source = await resolver.resolve(make_request("azurecontainer=c&azureblobkey=dir/b.png"))
    assert source.data == png_bytes
    assert source.provider is memory_provider


@pytest.mark.asyncio
async def test_resolve_missing_remote_object(resolver):
    with pytest.raises(ObjectNotFoundError):
        await resolver.resolve(make_request("azurecontainer=c&azureblobkey=missing.png"))


def test_derive_output_key():
    assert derive_output_key("dir/photo.png", "resize", "webp") == "dir/photo_resize.webp"
    assert derive_output_key("photo.png", "crop") == "photo_crop.png"


def test_remote_source_implies_destination(resolver):
    ref = resolver.resolve_destination(params_for("azurecontainer=c&azureblobkey=dir/b.png"), "flip")
    assert ref.provider_kind is ProviderKind.AZURE
    assert ref.key == "dir/b_flip.png"


def test_explicit_output_key(resolver):
    ref = resolver.resolve_destination(
        params_for("s3key=in.jpg&s3bucket=bucket&s3outputkey=out/x.jpg"), "resize", "jpg"
    )
    assert (ref.provider_kind, ref.container, ref.key) == (ProviderKind.S3, "bucket", "out/x.jpg")


def test_inline_upload_answers_inline(resolver):
    assert resolver.resolve_destination(params_for("width=10"), "resize") is None


@pytest.mark.asyncio
async def test_fetch_reference_requires_backend(resolver):
    with pytest.raises(DownloadError):
        await resolver.fetch_reference(params_for("width=10"), "mark.png")


@pytest.mark.asyncio
async def test_fetch_reference_reuses_backend(resolver, memory_provider):
    memory_provider.objects[("c", "mark.png")] = b"overlay"
    data = await resolver.fetch_reference(params_for("azurecontainer=c&azureblobkey=b.png"), "mark.png")
    assert data == b"overlay"


@pytest.mark.asyncio
async def test_fetch_reference_failure_is_download_error(resolver):
    with pytest.raises(DownloadError):
        await resolver.fetch_reference(params_for("azurecontainer=c&azureblobkey=b.png"), "gone.png")
