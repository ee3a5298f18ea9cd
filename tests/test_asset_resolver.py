import asyncio
import hashlib
import io
import threading

import httpx
import pytest
from botocore.exceptions import ClientError

import asset_resolver
from asset_resolver import AssetResolver, guess_suffix
from render_errors import AssetDownloadError, AssetLoadingError, NoLocalModel


def _run(cache_dir, handler, coro_fn, **kwargs):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = AssetResolver(cache_dir, client=client, **kwargs)
            return await coro_fn(resolver)

    return asyncio.run(run())


def _counting_handler(body=b"GLBDATA", status=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(status, content=body)

    return handler, calls


def test_second_resolve_is_a_cache_hit(tmp_path):
    handler, calls = _counting_handler()

    async def twice(resolver):
        first = await resolver.resolve("https://models.example/gltf/shirt.glb")
        second = await resolver.resolve("https://models.example/gltf/shirt.glb")
        return first, second

    first, second = _run(str(tmp_path), handler, twice)

    assert calls == ["https://models.example/gltf/shirt.glb"]
    assert first.data == second.data == b"GLBDATA"
    assert second.path == tmp_path / "shirt.glb"
    assert (tmp_path / "shirt.glb").read_bytes() == b"GLBDATA"


def test_existing_cache_file_skips_network(tmp_path):
    (tmp_path / "towel.glb").write_bytes(b"CACHED")
    handler, calls = _counting_handler()

    asset = _run(str(tmp_path), handler, lambda r: r.resolve("https://elsewhere.example/a/towel.glb"))

    assert calls == []
    assert asset.data == b"CACHED"


def test_concurrent_resolves_share_one_download(tmp_path):
    handler, calls = _counting_handler()

    async def together(resolver):
        return await asyncio.gather(*(resolver.resolve("https://models.example/hoodie.glb") for _ in range(4)))

    results = _run(str(tmp_path), handler, together)

    assert len(calls) == 1
    assert {asset.data for asset in results} == {b"GLBDATA"}


def test_bare_name_is_joined_onto_base_url(tmp_path):
    handler, calls = _counting_handler()

    _run(str(tmp_path), handler, lambda r: r.resolve("shirt.glb"), models_base_url="https://models.example/gltf")

    assert calls == ["https://models.example/gltf/shirt.glb"]


def test_bare_name_without_base_url_fails(tmp_path):
    handler, calls = _counting_handler()
    with pytest.raises(AssetLoadingError):
        _run(str(tmp_path), handler, lambda r: r.resolve("shirt.glb"))
    assert calls == []


def test_local_file_path_is_read_directly(tmp_path):
    source = tmp_path / "elsewhere" / "print.png"
    source.parent.mkdir()
    source.write_bytes(b"PNGBYTES")
    handler, calls = _counting_handler()

    asset = _run(str(tmp_path / "cache"), handler, lambda r: r.resolve(str(source)))

    assert calls == []
    assert asset.path == source
    assert asset.data == b"PNGBYTES"


def test_local_only_miss_raises(tmp_path):
    handler, calls = _counting_handler()
    with pytest.raises(NoLocalModel) as excinfo:
        _run(str(tmp_path), handler, lambda r: r.resolve("missing.glb", local_only=True))
    assert calls == []
    assert excinfo.value.status_code == 404


def test_non_success_status_is_a_download_error(tmp_path):
    handler, _ = _counting_handler(body=b"nope", status=404)
    with pytest.raises(AssetDownloadError) as excinfo:
        _run(str(tmp_path), handler, lambda r: r.resolve("https://models.example/missing.glb"))

    assert excinfo.value.status == 404
    assert excinfo.value.message == "nope"
    assert not (tmp_path / "missing.glb").exists()


def test_transport_failure_is_a_download_error(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AssetDownloadError) as excinfo:
        _run(str(tmp_path), handler, lambda r: r.resolve("https://models.example/shirt.glb"))
    assert excinfo.value.status is None


def test_failed_download_is_not_remembered(tmp_path):
    responses = iter([httpx.Response(500, content=b"boom"), httpx.Response(200, content=b"OK")])

    async def retry(resolver):
        with pytest.raises(AssetDownloadError):
            await resolver.resolve("https://models.example/flaky.glb")
        return await resolver.resolve("https://models.example/flaky.glb")

    asset = _run(str(tmp_path), lambda request: next(responses), retry)
    assert asset.data == b"OK"


def test_uploaded_bytes_are_stored_by_content_hash(tmp_path):
    data = b"glTF" + b"\x00" * 16
    handler, calls = _counting_handler()

    asset = _run(str(tmp_path), handler, lambda r: r.resolve(data))

    expected = tmp_path / f"upload-{hashlib.sha256(data).hexdigest()[:16]}.glb"
    assert calls == []
    assert asset.path == expected
    assert expected.read_bytes() == data


def test_empty_upload_is_rejected(tmp_path):
    handler, _ = _counting_handler()
    with pytest.raises(AssetLoadingError):
        _run(str(tmp_path), handler, lambda r: r.resolve(b""))


def test_cache_write_failure_still_returns_bytes(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("file in the way")
    handler, _ = _counting_handler()

    asset = _run(str(blocker), handler, lambda r: r.resolve("https://models.example/shirt.glb"))

    assert asset.path is None
    assert asset.data == b"GLBDATA"


class _FakeS3:
    def __init__(self, body=None, error=None):
        self.body = body
        self.error = error
        self.requests = []

    def get_object(self, Bucket, Key):
        self.requests.append((Bucket, Key))
        if self.error is not None:
            raise self.error
        return {"Body": io.BytesIO(self.body)}


def test_s3_reference_uses_boto3_client(tmp_path, monkeypatch):
    fake = _FakeS3(body=b"S3GLB")
    monkeypatch.setattr(AssetResolver, "_get_s3_client", lambda self: fake)
    handler, calls = _counting_handler()

    asset = _run(str(tmp_path), handler, lambda r: r.resolve("s3://private-models/garments/shirt.glb"))

    assert fake.requests == [("private-models", "garments/shirt.glb")]
    assert calls == []
    assert asset.data == b"S3GLB"
    assert (tmp_path / "shirt.glb").read_bytes() == b"S3GLB"


def test_s3_missing_key_is_a_download_error(tmp_path, monkeypatch):
    error = ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."},
         "ResponseMetadata": {"HTTPStatusCode": 404}},
        "GetObject",
    )
    monkeypatch.setattr(AssetResolver, "_get_s3_client", lambda self: _FakeS3(error=error))
    handler, _ = _counting_handler()

    with pytest.raises(AssetDownloadError) as excinfo:
        _run(str(tmp_path), handler, lambda r: r.resolve("s3://private-models/missing.glb"))
    assert excinfo.value.status == 404


@pytest.mark.parametrize(
    "data,suffix",
    [
        (b"glTF\x02\x00\x00\x00", ".glb"),
        (b"\x89PNG\r\n\x1a\nrest", ".png"),
        (b"\xff\xd8\xff\xe0", ".jpg"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", ".webp"),
        (b'  {"asset": {}}', ".gltf"),
        (b"\x00\x00", ".bin"),
    ],
)
def test_guess_suffix(data, suffix):
    assert guess_suffix(data) == suffix


def _record_threads(monkeypatch):
    threads = []
    original_read = asset_resolver.read_file
    original_write = AssetResolver._write_cache

    def read_file(path):
        threads.append(("read", threading.get_ident()))
        return original_read(path)

    def write_cache(self, path, data):
        threads.append(("write", threading.get_ident()))
        return original_write(self, path, data)

    monkeypatch.setattr(asset_resolver, "read_file", read_file)
    monkeypatch.setattr(AssetResolver, "_write_cache", write_cache)
    return threads


def test_file_io_runs_off_the_event_loop_thread(tmp_path, monkeypatch):
    (tmp_path / "towel.glb").write_bytes(b"CACHED")
    threads = _record_threads(monkeypatch)
    handler, _ = _counting_handler()

    async def resolve_all(resolver):
        loop_thread = threading.get_ident()
        await resolver.resolve("towel.glb")
        await resolver.resolve("https://models.example/shirt.glb")
        await resolver.resolve(b"glTF" + b"\x01" * 8)
        return loop_thread

    loop_thread = _run(str(tmp_path), handler, resolve_all)

    assert {kind for kind, _ in threads} == {"read", "write"}
    assert len([kind for kind, _ in threads if kind == "write"]) == 2
    assert all(ident != loop_thread for _, ident in threads)
