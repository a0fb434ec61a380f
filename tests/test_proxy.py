from urllib.parse import parse_qs, quote, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from streamrelay.configs import settings
from streamrelay.main import app

ALLOWED_ORIGIN = "https://player.example.com"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "allowed_origins", [ALLOWED_ORIGIN])
    with TestClient(app) as test_client:
        yield test_client


def streamed(data: bytes, chunk_size: int = 32):
    """Body that is still unread when the proxy receives it, like a real upstream socket."""

    async def chunks():
        for offset in range(0, len(data), chunk_size):
            yield data[offset : offset + chunk_size]

    return chunks()


def _decoded_target(proxied: str) -> str:
    parsed = urlparse(proxied)
    assert parsed.path == "/proxy"
    return parse_qs(parsed.query)["url"][0]


def test_missing_url_returns_400(client):
    response = client.get("/proxy")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing url parameter"}
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN


def test_disallowed_origin_returns_403(client):
    response = client.get("/proxy", params={"url": "https://host/a.ts"}, headers={"Origin": "https://evil.example"})

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized origin", "allowedOrigins": [ALLOWED_ORIGIN]}
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN


def test_preflight_returns_204_with_cors_headers(client):
    response = client.options("/proxy", headers={"Origin": ALLOWED_ORIGIN})

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
    assert "Range" in response.headers["access-control-allow-headers"]


def test_playlist_is_rewritten_through_proxy(client, mock_upstream):
    playlist = '#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n#EXTINF:6.0,\nseg0.ts\n'
    mock_upstream(
        lambda request: httpx.Response(
            200, content=playlist.encode(), headers={"content-type": "application/vnd.apple.mpegurl"}
        )
    )

    response = client.get(
        "/proxy", params={"url": "https://host/hls/index.m3u8"}, headers={"Origin": ALLOWED_ORIGIN}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN

    lines = response.text.split("\n")
    assert lines[0] == "#EXTM3U"
    assert lines[1] == (
        '#EXT-X-KEY:METHOD=AES-128,URI="http://testserver/proxy?url=' + quote("https://host/hls/key.bin", safe="") + '"'
    )
    assert lines[2] == "#EXTINF:6.0,"
    assert lines[3] == "http://testserver/proxy?url=" + quote("https://host/hls/seg0.ts", safe="")
    assert lines[4] == ""


def test_playlist_references_resolve_against_redirected_url(client, mock_upstream):
    playlist = "#EXTM3U\nhttps://abs.example/a.ts\n//cdn.example/b.ts\n/root/c.ts\nsub/d.ts\n"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "origin.example":
            return httpx.Response(302, headers={"location": "https://edge.example/live/x/master.m3u8"})
        return httpx.Response(200, content=playlist.encode(), headers={"content-type": "text/plain"})

    mock_upstream(handler)

    response = client.get("/proxy", params={"url": "https://origin.example/master.m3u8"})

    targets = [_decoded_target(line) for line in response.text.split("\n") if line and not line.startswith("#")]
    assert targets == [
        "https://abs.example/a.ts",
        "https://cdn.example/b.ts",
        "https://edge.example/root/c.ts",
        "https://edge.example/live/x/sub/d.ts",
    ]


def test_range_header_is_forwarded_to_upstream(client, mock_upstream):
    seen = mock_upstream(
        lambda request: httpx.Response(
            206,
            content=streamed(b"x" * 100),
            headers={"content-type": "video/mp2t", "content-range": "bytes 0-99/1000", "accept-ranges": "bytes"},
        )
    )

    response = client.get("/proxy", params={"url": "https://host/seg.ts"}, headers={"Range": "bytes=0-99"})

    assert seen[0].headers["range"] == "bytes=0-99"
    assert seen[0].headers["referer"] == "https://host/"
    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 0-99/1000"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.content == b"x" * 100


def test_segment_caching_depends_on_content_type(client, mock_upstream):
    content_types = {"/video.ts": "video/mp2t", "/blob": "application/octet-stream", "/sub.vtt": "text/vtt"}
    mock_upstream(
        lambda request: httpx.Response(
            200,
            content=streamed(b"data"),
            headers={"content-type": content_types[request.url.path], "content-length": "4"},
        )
    )

    video = client.get("/proxy", params={"url": "https://host/video.ts"})
    blob = client.get("/proxy", params={"url": "https://host/blob"})
    text = client.get("/proxy", params={"url": "https://host/sub.vtt"})

    assert video.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert blob.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert text.headers["cache-control"] == "public, max-age=60"
    assert video.headers["content-length"] == "4"
    assert video.content == b"data"


def test_upstream_error_status_is_mirrored(client, mock_upstream):
    mock_upstream(lambda request: httpx.Response(404))

    response = client.get("/proxy", params={"url": "https://host/missing.m3u8"}, headers={"Origin": ALLOWED_ORIGIN})

    assert response.status_code == 404
    assert response.json() == {"error": "Stream unavailable: 404", "details": "Not Found"}
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN


def test_transport_failure_returns_500(client, mock_upstream):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    mock_upstream(handler)

    response = client.get("/proxy", params={"url": "https://host/index.m3u8"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Proxy failed to fetch stream"
    assert "connection refused" in body["details"]
    assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
