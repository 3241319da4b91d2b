import logging
from dataclasses import dataclass, field

import requests
from urllib3.exceptions import HTTPError as TransportError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_CONTENT_TYPE = "video/mp4"
MIRRORED_HEADERS = ("Content-Length", "Content-Encoding", "Content-Range", "Accept-Ranges")


class FileResolutionError(Exception):
    """Raised when Telegram cannot turn a file id into a download URL."""


@dataclass
class UpstreamStream:
    status_code: int
    headers: dict = field(default_factory=dict)
    chunks: object = None


class TelegramFileRelay:
    """Resolve Telegram file ids and relay the file bytes."""

    def __init__(self, bot_token: str | None, session: requests.Session | None = None, timeout: float = 10, chunk_size: int = 64 * 1024):
        self.bot_token = bot_token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size

    def resolve_file_url(self, file_id: str):
        """
        Ask the Bot API where a file lives.

        Args:
            file_id (str): Telegram file identifier stored with the record.

        Returns:
            str: Download URL for the file.

        Raises:
            FileResolutionError: When the token is missing, the call fails or Telegram refuses.
        """
        if not self.bot_token:
            raise FileResolutionError("TELEGRAM_BOT_TOKEN is not configured")
        if not file_id:
            raise FileResolutionError("Record has no file_id")

        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/getFile"
        try:
            response = self.session.get(url, params={"file_id": file_id}, timeout=self.timeout)
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise FileResolutionError(f"getFile request failed: {exc}") from exc

        if not data.get("ok"):
            raise FileResolutionError(data.get("description") or "getFile returned ok=false")
        file_path = (data.get("result") or {}).get("file_path")
        if not file_path:
            raise FileResolutionError("getFile response has no file_path")
        return f"{TELEGRAM_API_BASE}/file/bot{self.bot_token}/{file_path}"

    def open_stream(self, url: str, range_header: str | None = None):
        """
        Start downloading a file without buffering it.

        Args:
            url (str): Download URL from `resolve_file_url`.
            range_header (str | None): Client `Range` header to forward.

        Returns:
            UpstreamStream: Status, headers to mirror and a chunk iterator.
        """
        request_headers = {"Range": range_header} if range_header else {}
        response = self.session.get(url, headers=request_headers, stream=True, timeout=self.timeout)
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise

        headers = {"Content-Type": response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE}
        for name in MIRRORED_HEADERS:
            value = response.headers.get(name)
            if value:
                headers[name] = value
        return UpstreamStream(response.status_code, headers, self._iter_chunks(response))

    def _iter_chunks(self, response):
        try:
            # Raw bytes, so any Content-Encoding and the mirrored Content-Length still match.
            for chunk in response.raw.stream(self.chunk_size, decode_content=False):
                if chunk:
                    yield chunk
        except (requests.RequestException, TransportError) as exc:
            logger.error("Upstream stream interrupted: %s", exc)
        finally:
            response.close()
