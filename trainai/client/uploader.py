"""Async client for the chunked upload endpoints with retries and bounded concurrency."""
import asyncio
import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryError, before_sleep_log, retry_if_exception_type, stop_after_attempt, \
    wait_exponential

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_RETRIES = 3
MAX_CONCURRENCY = 3


class UploadFailedError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UploadCancelledError(UploadFailedError):
    pass


@dataclass
class UploadResult:
    url: str
    path: str
    total_chunks: int
    upload_time: float


class ChunkedUploader:
    """
    Upload a recording in chunks: init, chunk x N, finalize.

    Files that fit in a single chunk go through the single-shot endpoint.
    Chunks are sent in batches of ``max_concurrency``; each chunk is retried
    up to ``max_retries`` attempts with exponential backoff. ``cancel()``
    stops an upload in flight, which then raises ``UploadCancelledError``.
    """

    def __init__(
            self,
            base_url: str,
            token: str,
            chunk_size: int = CHUNK_SIZE,
            max_retries: int = MAX_RETRIES,
            max_concurrency: int = MAX_CONCURRENCY,
            on_progress: Optional[Callable[[int], None]] = None,
            on_chunk_complete: Optional[Callable[[int, int], None]] = None,
            backoff_multiplier: float = 2.0,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.max_concurrency = max_concurrency
        self.on_progress = on_progress or (lambda _progress: None)
        self.on_chunk_complete = on_chunk_complete or (lambda _index, _total: None)
        self.backoff_multiplier = backoff_multiplier
        self.transport = transport

        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            transport=self.transport,
        )

    @staticmethod
    def _check(response: httpx.Response, what: str) -> dict:
        if response.is_success:
            return response.json()

        try:
            detail = response.json().get("error")
        except ValueError:
            detail = None

        message = f"Failed to {what}: {response.status_code}"
        raise UploadFailedError(f"{message} ({detail})" if detail else message, response.status_code)

    def cancel(self) -> None:
        """Abort the upload in flight. In-progress chunk requests are cancelled."""
        if self._task is None or self._task.done():
            return

        self._cancel_requested = True
        self._task.cancel()

    async def upload_bytes(self, data: bytes, file_name: str, file_type: str = "video/webm") -> UploadResult:
        self._task = asyncio.current_task()
        self._cancel_requested = False

        try:
            return await self._upload(data, file_name, file_type)

        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise

            self._task.uncancel()
            logger.info("upload of %s cancelled", file_name)
            raise UploadCancelledError("Upload cancelled by user") from None

        finally:
            self._task = None

    async def _upload(self, data: bytes, file_name: str, file_type: str) -> UploadResult:
        start = time.monotonic()
        total_chunks = max(1, math.ceil(len(data) / self.chunk_size))

        async with self._client() as client:
            if total_chunks == 1:
                response = await client.post("/upload", files={"video": (file_name, data, file_type)})
                result = self._check(response, "upload file")
                self.on_chunk_complete(1, 1)
                self.on_progress(100)
                return UploadResult(result["url"], result["path"], 1, time.monotonic() - start)

            upload_id = f"upload-{int(time.time() * 1000)}-{secrets.token_hex(6)}"
            response = await client.post(
                "/upload/init",
                json={"fileName": file_name, "fileSize": len(data), "fileType": file_type, "uploadId": upload_id},
            )
            session = self._check(response, "initialize upload session")
            session_id, upload_url = session["sessionId"], session["uploadUrl"]
            logger.info("upload session %s: %d chunk(s)", session_id, total_chunks)

            for batch_start in range(0, total_chunks, self.max_concurrency):
                batch = range(batch_start, min(batch_start + self.max_concurrency, total_chunks))
                try:
                    async with asyncio.TaskGroup() as tg:
                        for index in batch:
                            tg.create_task(
                                self._upload_chunk(client, upload_url, session_id, index, total_chunks, data, file_type)
                            )
                except ExceptionGroup as eg:
                    # siblings are already cancelled; surface the first failure as is
                    raise eg.exceptions[0]

                self.on_progress(min(100, round(batch.stop / total_chunks * 100)))

            response = await client.post("/upload/finalize", json={"sessionId": session_id})
            result = self._check(response, "finalize upload")

        return UploadResult(result["url"], result["path"], total_chunks, time.monotonic() - start)

    async def _upload_chunk(
            self,
            client: httpx.AsyncClient,
            upload_url: str,
            session_id: str,
            index: int,
            total_chunks: int,
            data: bytes,
            file_type: str
    ) -> None:
        chunk = data[index * self.chunk_size:(index + 1) * self.chunk_size]

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_multiplier),
            retry=retry_if_exception_type((httpx.HTTPError, UploadFailedError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await client.post(
                        upload_url,
                        data={"chunkIndex": str(index), "sessionId": session_id},
                        files={"chunk": (f"chunk_{index}", chunk, file_type)},
                    )
                    self._check(response, f"upload chunk {index}")

        except RetryError as e:
            cause = e.last_attempt.exception()
            raise UploadFailedError(
                f"Failed to upload chunk {index} after {self.max_retries} attempts: {cause}",
                getattr(cause, "status_code", None),
            ) from cause

        self.on_chunk_complete(index, total_chunks)
