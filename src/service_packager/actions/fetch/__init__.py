from .http import (
    HttpFetchError,
    HttpRetriesExceeded,
    HttpStatusError,
    make_http_client,
    stream_get_to_file_with_retries,
)
from .runner import fetch_prebuilt

__all__ = [
    "HttpFetchError",
    "HttpRetriesExceeded",
    "HttpStatusError",
    "fetch_prebuilt",
    "make_http_client",
    "stream_get_to_file_with_retries",
]
