import io
import logging
import re
import time
from urllib.parse import urlsplit

import requests
import urllib3

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
SKIP_CHUNK_SIZE = 64 * 1024

_CONTENT_RANGE = re.compile(r"^\s*bytes\s+(\d+)-")

# errors a byte source may raise mid-transfer; they count as a dropped connection
_READ_ERRORS = (OSError, urllib3.exceptions.HTTPError, requests.RequestException)


class HTTPStreamError(OSError):
    """Base class for errors raised by RetryableHTTPStream."""


class InvalidResourceError(HTTPStreamError, ValueError):
    """The URL does not name an HTTP(S) resource."""


class StreamConnectionError(HTTPStreamError, ConnectionError):
    """A connection attempt failed outright."""


class TooManyRetriesError(HTTPStreamError):
    """The retry policy gave up on reconnecting."""


class RetryPolicy:
    """Allow a bounded number of reconnects, with exponential backoff."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.attempts = 0

    def delay(self) -> float:
        return min(self.initial_delay * self.backoff_factor ** self.attempts, self.max_delay)

    def __call__(self, reason=None) -> bool:
        if self.attempts >= self.max_retries:
            logger.error("Giving up after %d reconnect attempts (last failure: %s)", self.attempts, reason)
            return False
        delay = self.delay()
        self.attempts += 1
        logger.warning(
            "Reconnect attempt %d/%d in %.1fs (%s)",
            self.attempts, self.max_retries, delay, reason or "connection closed early",
        )
        if delay > 0:
            time.sleep(delay)
        return True


class HTTPConnector:
    """Opens streaming GET requests with a requests session."""

    def __init__(self, session=None, timeout=30, user_agent="robusthttp/1.0"):
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent

    def open(self, url, proxy=None, start=None) -> requests.Response:
        # identity encoding keeps Content-Length equal to the bytes we read off the wire
        headers = {"User-Agent": self.user_agent, "Accept-Encoding": "identity"}
        if start is not None:
            headers["Range"] = f"bytes={start}-"
        proxies = {"http": proxy, "https": proxy} if proxy else None
        logger.debug("GET %s (range start: %s, proxy: %s)", url, start, proxy)
        try:
            resp = self.session.get(
                url, headers=headers, proxies=proxies, stream=True, timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise StreamConnectionError(f"Cannot connect to {url}: {e}") from e
        return resp

    def close(self):
        if self._owns_session:
            self.session.close()


def raw_stream(response):
    return response.raw


def content_length(headers) -> int:
    try:
        return int(headers.get("Content-Length"))
    except (TypeError, ValueError):
        return -1


def content_range_start(headers):
    """Start offset announced by a Content-Range header, or None."""
    m = _CONTENT_RANGE.match(headers.get("Content-Range") or "")
    return int(m.group(1)) if m else None


def fast_forward(source, count) -> bool:
    """
    Read and drop ``count`` bytes from ``source``.

    Returns False when the source ends before ``count`` bytes were dropped.
    Transport errors propagate.
    """
    while count > 0:
        chunk = source.read(min(count, SKIP_CHUNK_SIZE))
        if not chunk:
            return False
        count -= len(chunk)
    return True


class RetryableHTTPStream(io.RawIOBase):
    """
    Sequential stream over an HTTP(S) resource that reconnects when the
    transfer stops before ``total_length`` bytes were delivered.

    Reconnects ask for the remaining bytes with a Range header. When the
    server sends the whole entity instead, the already delivered prefix is
    read and dropped.

    If the server declares no Content-Length, ``total_length`` is -1 and every
    end of data looks premature: such a stream only ends by exhausting the
    retry policy.
    """

    # close() may run on a partly built stream (__del__ after a failed __init__)
    response = None
    connector = None
    _source = None
    _owns_connector = False

    def __init__(self, url, proxy=None, *, retry_policy=None, connector=None, get_stream=None):
        if urlsplit(url).scheme.lower() not in ("http", "https"):
            raise InvalidResourceError(f"{url} is not an HTTP URL")
        self.url = url
        self.proxy = proxy
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self._owns_connector = connector is None
        self.connector = connector if connector is not None else HTTPConnector()
        self._get_stream = get_stream or raw_stream
        self.bytes_read = 0
        self._ended = False
        self._aborted = False
        try:
            self.response = self.connector.open(url, proxy)
            self._source = self._get_stream(self.response)
        except BaseException:
            self.close()
            raise
        self.total_length = content_length(self.response.headers)
        if self.total_length < 0:
            logger.warning(
                "%s declares no Content-Length, the end of the stream cannot be verified", url
            )

    @property
    def headers(self):
        return self.response.headers if self.response is not None else {}

    def readable(self):
        return True

    def seekable(self):
        return False

    def tell(self):
        return self.bytes_read

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream")
        if self._aborted:
            raise TooManyRetriesError(f"Download of {self.url} was aborted")
        size = len(b)
        if size == 0:
            return 0
        while not self._ended:
            reason = None
            try:
                data = self._source.read(size)
            except _READ_ERRORS as e:
                data, reason = b"", e
            if data:
                n = len(data)
                b[:n] = data
                self.bytes_read += n
                return n
            if 0 <= self.total_length <= self.bytes_read:
                logger.debug("End of %s after %d bytes", self.url, self.bytes_read)
                self._ended = True
                self._release()
                break
            logger.warning(
                "Transfer of %s stopped at %d of %d bytes: %s",
                self.url, self.bytes_read, self.total_length, reason or "connection closed",
            )
            self._reconnect(reason)
        return 0

    def _reconnect(self, reason):
        self._release()
        try:
            while True:
                if not self.retry_policy(reason):
                    raise TooManyRetriesError(
                        f"Too many failures while downloading {self.url}, aborting"
                    ) from reason
                try:
                    response = self.connector.open(self.url, self.proxy, start=self.bytes_read)
                except StreamConnectionError as e:
                    logger.warning("Reconnect failed: %s", e)
                    reason = e
                    continue
                reason = self._resume(response)
                if reason is None:
                    return
        except BaseException:
            # no source left to read from
            self._aborted = True
            raise

    def _resume(self, response):
        """Adopt ``response`` aligned at ``bytes_read``, or return why it cannot be."""
        source = None
        try:
            source = self._get_stream(response)
            if content_range_start(response.headers) == self.bytes_read:
                self._adopt(response, source)
                return None

            logger.info("Server resent the whole entity, skipping %d bytes", self.bytes_read)
            try:
                aligned = fast_forward(source, self.bytes_read)
            except _READ_ERRORS as e:
                aligned, reason = False, e
            else:
                reason = None if aligned else HTTPStreamError(
                    f"entity ended before byte {self.bytes_read}"
                )
            if aligned:
                self._adopt(response, source)
                return None
        except BaseException:
            if source is not None:
                _close_quietly(source)
            _close_quietly(response)
            raise
        logger.warning("Fast-forward to %d failed: %s", self.bytes_read, reason)
        _close_quietly(source)
        _close_quietly(response)
        return reason

    def _adopt(self, response, source):
        self.response = response
        self._source = source
        logger.info("Resumed %s at byte %d", self.url, self.bytes_read)

    def _release(self):
        if self._source is not None:
            _close_quietly(self._source)
            self._source = None
        if self.response is not None:
            _close_quietly(self.response)

    def close(self):
        if self.closed:
            return
        try:
            self._release()
            if self._owns_connector and self.connector is not None:
                self.connector.close()
        finally:
            super().close()


def _close_quietly(obj):
    close = getattr(obj, "close", None)
    if close is None:
        return
    try:
        close()
    except _READ_ERRORS as e:
        logger.debug("Ignoring error on close: %s", e)


def open_http(url, mode="rb", encoding=None, errors=None, newline=None, proxy=None, retries=DEFAULT_MAX_RETRIES, **kwargs):
    """
    Open a remote URL for sequential reading that survives dropped connections.

    Parameters:
      - url: the HTTP(S) URL to open.
      - mode: 'rb' (binary, default) or 'r'/'rt' (text).
      - encoding: text encoding (e.g. 'utf-8'); defaults to the locale encoding.
      - errors: error handling for decoding ('strict', 'ignore', etc.).
      - newline: newline translation mode (None, '', '\\n', '\\r\\n', etc.).
      - proxy: proxy URL used for every connection, or None.
      - retries: how many reconnects are allowed over the whole download.
      - kwargs: passed on to RetryableHTTPStream (retry_policy, connector, get_stream).

    Returns:
      - a file-like object supporting .read(), .readline(), .close(), etc.
    """
    if any(m in mode for m in ("w", "a", "x", "+")):
        raise ValueError("only read modes are supported ('rb' or 'r')")
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=retries))
    raw = RetryableHTTPStream(url, proxy, **kwargs)
    buf = io.BufferedReader(raw)
    if "b" not in mode:
        return io.TextIOWrapper(buf, encoding=io.text_encoding(encoding), errors=errors, newline=newline)
    return buf
