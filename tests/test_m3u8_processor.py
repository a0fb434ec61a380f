from urllib.parse import quote

import pytest

from streamrelay.utils.http_utils import decode_proxy_url, encode_proxy_url
from streamrelay.utils.m3u8_processor import M3U8Processor, resolve_url

PROXY = "https://relay.example.com/proxy"
BASE = "https://host.example/live/stream/index.m3u8"


@pytest.mark.parametrize(
    "reference, expected",
    [
        ("https://other.example/a.ts", "https://other.example/a.ts"),
        ("http://other.example/a.ts", "http://other.example/a.ts"),
        ("//cdn.example/a.ts", "https://cdn.example/a.ts"),
        ("/a.ts", "https://host.example/a.ts"),
        ("chunks/a.ts?token=1", "https://host.example/live/stream/chunks/a.ts?token=1"),
    ],
)
def test_resolve_url_tiers(reference, expected):
    assert resolve_url(reference, BASE) == expected


def test_resolve_url_against_bare_host():
    assert resolve_url("a.ts", "https://host.example") == "https://host.example/a.ts"


def test_tag_lines_keep_everything_but_uri():
    processor = M3U8Processor(PROXY)
    line = '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",URI="audio/en.m3u8"'

    rewritten = processor.process_line(line, BASE)

    expected_uri = f"{PROXY}?url=" + quote("https://host.example/live/stream/audio/en.m3u8", safe="")
    assert rewritten == f'#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",URI="{expected_uri}"'


def test_plain_tags_and_blank_lines_pass_through():
    processor = M3U8Processor(PROXY)
    content = "#EXTM3U\n\n#EXT-X-TARGETDURATION:6\n   \n#EXT-X-ENDLIST"

    assert processor.process_m3u8(content, BASE) == content


def test_every_reference_line_is_proxied():
    processor = M3U8Processor(PROXY)
    content = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=800000\nlow/index.m3u8\n#EXTINF:4,\n  seg1.ts  \n"

    lines = processor.process_m3u8(content, BASE).split("\n")

    assert len(lines) == 6
    assert decode_proxy_url(lines[2]) == "https://host.example/live/stream/low/index.m3u8"
    assert decode_proxy_url(lines[4]) == "https://host.example/live/stream/seg1.ts"


def test_proxy_url_round_trip_keeps_query_strings():
    destination = "https://host.example/a.m3u8?token=a&b=c d"

    proxied = encode_proxy_url(PROXY + "/", destination)

    assert proxied.startswith(f"{PROXY}?url=")
    assert decode_proxy_url(proxied) == destination
    assert decode_proxy_url("https://host.example/a.m3u8?url=x") is None
