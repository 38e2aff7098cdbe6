import asyncio

import httpx
import pytest

import image_fetch
from image_fetch import DownloadError, download_image


def _fetch(handler, url, dest, **kwargs):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await download_image(url, dest, client=client, **kwargs)

    return asyncio.run(run())


def test_download_writes_body(tmp_path):
    dest = tmp_path / "out.download"

    def handler(request):
        assert request.url == "https://example.com/photo.jpg"
        return httpx.Response(200, content=b"IMAGEBYTES")

    written = _fetch(handler, "https://example.com/photo.jpg", dest)

    assert written == len(b"IMAGEBYTES")
    assert dest.read_bytes() == b"IMAGEBYTES"


def test_non_success_status_reports_code(tmp_path):
    dest = tmp_path / "out.download"

    with pytest.raises(DownloadError) as excinfo:
        _fetch(lambda request: httpx.Response(404), "https://example.com/missing.jpg", dest)

    assert excinfo.value.status_code == 404
    assert "Failed to download image" in str(excinfo.value)
    assert "404 Not Found" in str(excinfo.value)


def test_server_error_status(tmp_path):
    with pytest.raises(DownloadError) as excinfo:
        _fetch(lambda request: httpx.Response(503), "https://example.com/photo.jpg", tmp_path / "out")
    assert excinfo.value.status_code == 503


def test_transport_failure(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DownloadError) as excinfo:
        _fetch(handler, "https://invalid-host.example/image.jpg", tmp_path / "out")
    assert excinfo.value.status_code is None


def test_timeout(tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(DownloadError, match="timed out"):
        _fetch(handler, "https://example.com/photo.jpg", tmp_path / "out")


def test_body_over_limit(tmp_path):
    with pytest.raises(DownloadError, match="byte limit"):
        _fetch(lambda request: httpx.Response(200, content=b"x" * 100), "https://example.com/a.jpg", tmp_path / "out", max_bytes=10)


def test_url_without_scheme(tmp_path):
    with pytest.raises(DownloadError, match="Failed to download image"):
        asyncio.run(download_image("invalid-url", tmp_path / "out"))


def test_file_writes_run_off_the_event_loop(monkeypatch, tmp_path):
    dest = tmp_path / "out.download"
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(image_fetch.asyncio, "to_thread", recording_to_thread)

    written = _fetch(lambda request: httpx.Response(200, content=b"IMAGEBYTES"), "https://example.com/a.jpg", dest)

    assert written == len(b"IMAGEBYTES")
    assert dest.read_bytes() == b"IMAGEBYTES"
    assert "open" in offloaded
    assert "write" in offloaded
    assert offloaded.index("close") > offloaded.index("write")


def test_body_over_limit_closes_file(tmp_path):
    dest = tmp_path / "out"
    with pytest.raises(DownloadError):
        _fetch(lambda request: httpx.Response(200, content=b"x" * 100), "https://example.com/a.jpg", dest, max_bytes=10)
    assert dest.read_bytes() == b""
