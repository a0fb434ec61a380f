import json

import httpx
import pytest
import tenacity

from streamrelay import catalog
from streamrelay.catalog import channels_to_sources, fetch_channels
from streamrelay.errors import StreamRelayError, UpstreamFetchError
from streamrelay.schemas import DEFAULT_LOGO_URL, CatalogChannel, CatalogRequest, channel_id

ENDPOINT = "https://catalog.example/api/parse-m3u"
REQUEST = CatalogRequest(categoryId="sports", categoryName="Sports", m3uUrl="https://lists.example/sports.m3u")


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(catalog._post_catalog.retry, "wait", tenacity.wait_none())


@pytest.mark.asyncio
async def test_channels_are_parsed_from_camel_case_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "channels": [
                    {
                        "id": "sports_arena_1_0",
                        "name": "Arena 1",
                        "logoUrl": "https://img.example/arena.png",
                        "streamUrl": "https://cdn.example/arena/index.m3u8",
                        "categoryId": "sports",
                        "categoryName": "Sports",
                    },
                    {
                        "id": "sports_arena_2_1",
                        "name": "Arena 2",
                        "streamUrl": "https://cdn.example/arena2/index.m3u8",
                        "categoryId": "sports",
                        "categoryName": "Sports",
                    },
                ]
            },
        )

    async with _client(handler) as client:
        channels = await fetch_channels(ENDPOINT, REQUEST, client)

    assert seen == [
        {"categoryId": "sports", "categoryName": "Sports", "m3uUrl": "https://lists.example/sports.m3u"}
    ]
    assert [channel.name for channel in channels] == ["Arena 1", "Arena 2"]
    assert channels[0].logo_url == "https://img.example/arena.png"
    assert channels[1].logo_url == DEFAULT_LOGO_URL
    assert channels[0].stream_url == "https://cdn.example/arena/index.m3u8"


@pytest.mark.asyncio
async def test_error_status_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    async with _client(handler) as client:
        with pytest.raises(UpstreamFetchError) as exc_info:
            await fetch_channels(ENDPOINT, REQUEST, client)

    assert exc_info.value.status_code == 502
    assert exc_info.value.details == "bad gateway"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transport_failures_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"channels": []})

    async with _client(handler) as client:
        channels = await fetch_channels(ENDPOINT, REQUEST, client)

    assert channels == []
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_unreachable_service_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(UpstreamFetchError) as exc_info:
            await fetch_channels(ENDPOINT, REQUEST, client)

    assert exc_info.value.status_code is None
    assert exc_info.value.message == "Catalog service unreachable"
    assert "refused" in exc_info.value.details


@pytest.mark.asyncio
async def test_malformed_answer_is_rejected():
    async with _client(lambda request: httpx.Response(200, json={"channels": [{"name": "x"}]})) as client:
        with pytest.raises(StreamRelayError, match="Invalid catalog response"):
            await fetch_channels(ENDPOINT, REQUEST, client)


@pytest.mark.asyncio
async def test_owned_client_is_closed(monkeypatch):
    clients = []

    def create_client(**kwargs):
        client = _client(lambda request: httpx.Response(200, json={"channels": []}))
        clients.append(client)
        return client

    monkeypatch.setattr(catalog, "create_httpx_client", create_client)

    assert await fetch_channels(ENDPOINT, REQUEST) == []
    assert clients[0].is_closed


def test_channels_become_ordered_sources():
    channels = [
        CatalogChannel(id="a", name="One", streamUrl="https://cdn.example/1.m3u8", categoryId="c", categoryName="C"),
        CatalogChannel(id="b", name="Dead", streamUrl="", categoryId="c", categoryName="C"),
        CatalogChannel(id="c", name="Two", streamUrl="https://cdn.example/2.mpd", categoryId="c", categoryName="C"),
    ]

    sources = channels_to_sources(channels)

    assert [(source.raw_url, source.label) for source in sources] == [
        ("https://cdn.example/1.m3u8", "One"),
        ("https://cdn.example/2.mpd", "Two"),
    ]


@pytest.mark.parametrize(
    "name, position, expected",
    [
        ("Arena 1", 0, "sports_arena_1_0"),
        ("BBC One HD!", 4, "sports_bbc_one_hd__4"),
        ("Ñews", 2, "sports__ews_2"),
    ],
)
def test_channel_id(name, position, expected):
    assert channel_id("sports", name, position) == expected
