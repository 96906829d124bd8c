from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, TypeVar

import httpx
import structlog
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from service_packager.core import safe_unlink
from service_packager.core.errors import PackagerError, TransientError
from service_packager.core.hashing import FileDigest, new_hasher

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}

log = structlog.get_logger(__name__)

T = TypeVar("T")


class HttpFetchError(PackagerError):
    """Base HTTP fetch error."""


class HttpStatusError(HttpFetchError):
    """
    Non-retryable HTTP status (e.g., 400/401/403/404) or any status not in allowed.
    """

    def __init__(
        self,
        *,
        method: str,
        url: str,
        status_code: int,
        body_snippet: str | None,
    ) -> None:
        msg = f"HTTP {status_code} for {method} {url}"
        if body_snippet:
            msg += f" (body: {body_snippet})"
        super().__init__(msg)
        self.method = method
        self.url = url
        self.status_code = status_code


class HttpRetriesExceeded(HttpFetchError, TransientError):
    def __init__(
        self, *, method: str, url: str, attempts: int, last_error: BaseException
    ) -> None:
        super().__init__(
            f"HTTP retries exceeded for {method} {url} (attempts={attempts}): {last_error}"
        )
        self.method = method
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


def make_http_client(
    *,
    timeout_s: float = 30.0,
    follow_redirects: bool = True,
    user_agent: str = "service-packager/0.1",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    t = httpx.Timeout(timeout_s, connect=min(timeout_s, 10.0))
    return httpx.Client(
        timeout=t,
        follow_redirects=follow_redirects,
        headers={"User-Agent": user_agent},
        transport=transport,
    )


def is_retryable_status(code: int) -> bool:
    return code in _RETRYABLE_STATUSES or 500 <= code < 600


class DeterministicExponentialBackoff(wait_base):
    def __init__(self, *, base: float = 0.5, cap: float = 8.0) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state) -> float:
        n = retry_state.attempt_number
        return min(self._cap, self._base * (2 ** (n - 1)))


class RetryableHttpStatus(Exception):
    def __init__(self, *, method: str, url: str, status_code: int) -> None:
        super().__init__(f"HTTP {status_code} for {method} {url}")
        self.method = method
        self.url = url
        self.status_code = status_code


OnRetry = Callable[[int, float | None, BaseException | None], None]


def _retrying(
    *,
    method: str,
    url: str,
    max_attempts: int,
    base: float,
    cap: float,
    on_retry: OnRetry | None,
) -> Retrying:
    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else None
        log.warning(
            "http.retry",
            method=method,
            url=url,
            attempt=retry_state.attempt_number,
            sleep_s=sleep,
            error=repr(exc) if exc else None,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, sleep, exc)

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=DeterministicExponentialBackoff(base=base, cap=cap),
        retry=retry_if_exception_type(
            (httpx.TimeoutException, httpx.TransportError, RetryableHttpStatus)
        ),
        reraise=False,
        before_sleep=_before_sleep,
    )


def _run_with_retries(
    *,
    method: str,
    url: str,
    max_attempts: int,
    backoff_base: float,
    backoff_cap: float,
    on_retry: OnRetry | None,
    fn: Callable[[], T],
) -> T:
    retrying = _retrying(
        method=method,
        url=url,
        max_attempts=max_attempts,
        base=backoff_base,
        cap=backoff_cap,
        on_retry=on_retry,
    )

    attempt_no = 0

    try:
        for attempt in retrying:
            attempt_no = attempt.retry_state.attempt_number
            with attempt:
                return fn()

    except RetryError as re:
        last = re.last_attempt.exception()
        raise HttpRetriesExceeded(
            method=method,
            url=url,
            attempts=re.last_attempt.attempt_number,
            last_error=last or Exception("unknown"),
        ) from last

    except PackagerError:
        # HttpStatusError, cancellation: never wrapped, never retried
        raise

    except Exception as e:
        raise HttpRetriesExceeded(
            method=method,
            url=url,
            attempts=max(attempt_no, 1),
            last_error=e,
        ) from e

    raise RuntimeError("unreachable")


def _header_value(headers: httpx.Headers, name: str) -> str | None:
    v = headers.get(name)
    v = v.strip() if v else ""
    return v or None


@dataclass(frozen=True, slots=True)
class HttpResponseInfo:
    status_code: int
    final_url: str
    etag: str | None
    content_type: str | None
    content_length: str | None


def extract_response_info(resp: httpx.Response) -> HttpResponseInfo:
    h = resp.headers
    return HttpResponseInfo(
        status_code=resp.status_code,
        final_url=str(resp.url),
        etag=_header_value(h, "ETag"),
        content_type=_header_value(h, "Content-Type"),
        content_length=_header_value(h, "Content-Length"),
    )


def _body_snippet(resp: httpx.Response, *, limit: int = 200) -> str | None:
    """
    Best-effort, bounded snippet for debugging.
    """
    try:
        buf = bytearray()
        for chunk in resp.iter_bytes(chunk_size=min(4096, limit * 4)):
            buf.extend(chunk)
            if len(buf) >= limit * 4:
                break
        s = bytes(buf).decode("utf-8", errors="replace")[:limit].strip()
        return s or None
    except httpx.HTTPError:
        return None


@dataclass(frozen=True, slots=True)
class HttpDownloadResult:
    info: HttpResponseInfo
    digest: FileDigest
    attempts: int


def stream_get_to_file_with_retries(
    client: httpx.Client,
    *,
    url: str,
    dest_path: os.PathLike[str] | str,
    headers: Mapping[str, str] | None = None,
    allowed_statuses: Iterable[int] = (200,),
    max_attempts: int = 3,
    chunk_bytes: int = 1024 * 128,
    backoff_base: float = 0.5,
    backoff_cap: float = 8.0,
    algorithm: str = "sha256",
    checkpoint: Callable[[], None] | None = None,
    on_retry: OnRetry | None = None,
) -> HttpDownloadResult:
    """
    Stream GET into dest_path, hashing while writing.

    `checkpoint` is called between chunks; it may raise to abort the download.
    Caller should pass a temp path; atomic rename belongs to the caller.
    """
    dest = Path(dest_path)
    allowed = set(allowed_statuses)
    attempts = 0

    def _do() -> HttpDownloadResult:
        nonlocal attempts
        attempts += 1
        safe_unlink(dest)
        if checkpoint is not None:
            checkpoint()

        with client.stream("GET", url, headers=headers) as resp:
            if resp.status_code not in allowed:
                if is_retryable_status(resp.status_code):
                    raise RetryableHttpStatus(
                        method="GET", url=url, status_code=resp.status_code
                    )
                raise HttpStatusError(
                    method="GET",
                    url=url,
                    status_code=resp.status_code,
                    body_snippet=_body_snippet(resp),
                )

            info = extract_response_info(resp)
            dest.parent.mkdir(parents=True, exist_ok=True)

            h = new_hasher(algorithm)
            total = 0
            try:
                with dest.open("wb") as f:
                    for chunk in resp.iter_bytes(chunk_size=chunk_bytes):
                        if not chunk:
                            continue
                        f.write(chunk)
                        h.update(chunk)
                        total += len(chunk)
                        if checkpoint is not None:
                            checkpoint()
                    f.flush()
                    os.fsync(f.fileno())
            except BaseException:
                safe_unlink(dest)
                raise

            return HttpDownloadResult(
                info=info,
                digest=FileDigest(algorithm=algorithm, hexdigest=h.hexdigest(), bytes=total),
                attempts=attempts,
            )

    try:
        return _run_with_retries(
            method="GET",
            url=url,
            max_attempts=max_attempts,
            backoff_base=backoff_base,
            backoff_cap=backoff_cap,
            on_retry=on_retry,
            fn=_do,
        )
    except BaseException:
        safe_unlink(dest)
        raise
