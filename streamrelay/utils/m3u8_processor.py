import logging
import re
from urllib import parse

from streamrelay.utils.http_utils import encode_proxy_url

logger = logging.getLogger(__name__)

URI_ATTRIBUTE_PATTERN = re.compile(r'URI="([^"]+)"')


def resolve_url(target: str, base_url: str) -> str:
    """
    Resolve a playlist reference against the URL the playlist was served from.

    Resolution order:
        1. ``http://`` / ``https://`` references are returned unchanged.
        2. Protocol-relative ``//host/...`` references get the base scheme.
        3. Absolute paths ``/x`` get the base scheme and host.
        4. Anything else is appended to the base scheme, host and directory.

    Args:
        target (str): The reference as written in the playlist.
        base_url (str): The final (post-redirect) URL of the playlist response.

    Returns:
        str: The absolute URL.
    """
    if target.startswith(("http://", "https://")):
        return target

    base = parse.urlsplit(base_url)
    if target.startswith("//"):
        return f"{base.scheme}:{target}"

    if target.startswith("/"):
        return f"{base.scheme}://{base.netloc}{target}"

    base_path = base.path[: base.path.rfind("/") + 1] or "/"
    return f"{base.scheme}://{base.netloc}{base_path}{target}"


class M3U8Processor:
    def __init__(self, proxy_url: str):
        """
        Initializes the M3U8Processor with the proxy endpoint every reference is routed back through.

        Args:
            proxy_url (str): Absolute URL of the proxy endpoint, e.g. ``https://relay.example.com/proxy``.
        """
        self.proxy_url = proxy_url

    def process_m3u8(self, content: str, base_url: str) -> str:
        """
        Rewrites every reference of a playlist so it is fetched through the proxy.

        Line order and line count are preserved; only URI substrings change.

        Args:
            content (str): The m3u8 content to process.
            base_url (str): The final URL of the playlist response, used to resolve relative references.

        Returns:
            str: The processed m3u8 content.
        """
        return "\n".join(self.process_line(line, base_url) for line in content.split("\n"))

    def process_line(self, line: str, base_url: str) -> str:
        """
        Process a single line from the m3u8 content.

        Args:
            line (str): The line to process.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The processed line.
        """
        stripped = line.strip()
        if not stripped:
            return line
        if stripped.startswith("#"):
            if 'URI="' in stripped:
                return self.process_uri_attributes(line, base_url)
            return line
        return self.proxy_url_for(stripped, base_url)

    def process_uri_attributes(self, line: str, base_url: str) -> str:
        """
        Reproxies each quoted ``URI="..."`` attribute of a tag line (keys, media renditions, maps).

        Args:
            line (str): The tag line to process.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The tag line with only its URI values replaced.
        """
        return URI_ATTRIBUTE_PATTERN.sub(lambda match: f'URI="{self.proxy_url_for(match.group(1), base_url)}"', line)

    def proxy_url_for(self, reference: str, base_url: str) -> str:
        """
        Resolves a reference and encodes it as a proxy URL.

        Args:
            reference (str): The reference to proxy.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The proxied URL.
        """
        return encode_proxy_url(self.proxy_url, resolve_url(reference, base_url))
