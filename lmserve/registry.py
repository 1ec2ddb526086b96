"""Model registry client for the Ollama HTTP API.

Issues pull/list/delete requests against the inference server and tracks
per-model download progress. Pulls run as background tasks; callers observe
them with ``poll_progress``, ``wait_for`` or a subscription callback.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Optional

import httpx

from .exceptions import PullFailedError, UnknownModelError
from .models import ModelRecord, PullStatus

logger = logging.getLogger(__name__)

OLLAMA_DEFAULT_PORT = 11434

ProgressCallback = Callable[[ModelRecord], None]


def normalize_model_name(name: str) -> str:
    """Ollama stores untagged names as ``<name>:latest``."""
    return name if ":" in name.rsplit("/", 1)[-1] else f"{name}:latest"


class ModelRegistryClient:
    """Client for the model endpoints of the inference server."""

    def __init__(
        self,
        base_url: str = f"http://localhost:{OLLAMA_DEFAULT_PORT}",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.request_timeout = request_timeout
        self._records: dict[str, ModelRecord] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._subscribers: list[ProgressCallback] = []

    def _client(self, read_timeout: Optional[float] = None) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.request_timeout, read=read_timeout)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    # -------------------------------------------------------------------------
    # Pull tracking
    # -------------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> None:
        """Register a callback invoked with every record update."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def request_pull(self, name: str) -> ModelRecord:
        """Start pulling ``name`` in the background and return immediately.

        A pull already in flight is returned as-is. A finished record (ready or
        failed) is replaced by a fresh one, so retrying a failed pull is just
        another call. Must be called from a running event loop.
        """
        existing = self._records.get(name)
        if existing is not None and existing.pull_status == PullStatus.PULLING:
            return existing.model_copy()

        record = ModelRecord(name=name)
        record.mark_pulling()
        self._records[name] = record
        self._tasks[name] = asyncio.get_event_loop().create_task(self._pull(record))
        logger.info(f"Pull requested for model {name}")
        self._notify(record)
        return record.model_copy()

    def poll_progress(self, name: str) -> ModelRecord:
        """Return the latest known record for ``name``.

        Raises:
            UnknownModelError: No pull was ever requested for ``name``.
        """
        return self._get(name).model_copy()

    async def wait_for(self, name: str, timeout: float) -> ModelRecord:
        """Wait up to ``timeout`` seconds for the pull to finish.

        On timeout the pull is cancelled and the record marked failed.
        """
        record = self._get(name)
        task = self._tasks.get(name)
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                task.cancel()
                await asyncio.wait([task])
                if not record.is_terminal:
                    self._fail(record, f"pull did not finish within {timeout}s")
        if not record.is_terminal:
            # The pull task ended without reaching ready or failed
            self._fail(record, "pull ended without a final status")
        return record.model_copy()

    async def pull(self, name: str, timeout: float) -> ModelRecord:
        """Request a pull and wait for it to finish."""
        self.request_pull(name)
        return await self.wait_for(name, timeout)

    @staticmethod
    def raise_for_failure(record: ModelRecord) -> ModelRecord:
        """Raise PullFailedError if ``record`` ended in the failed state."""
        if record.pull_status == PullStatus.FAILED:
            raise PullFailedError(record.name, record.diagnostic)
        return record

    async def _pull(self, record: ModelRecord) -> None:
        """Stream ``POST /api/pull`` and apply each progress line."""
        url = f"{self.base_url}/api/pull"
        try:
            # Layer downloads can stall for minutes between progress lines
            async with self._client(read_timeout=None) as client:
                async with client.stream(
                    "POST",
                    url,
                    json={"name": record.name, "stream": True},
                ) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        self._fail(
                            record,
                            self._error_text(body) or f"HTTP {response.status_code} from {url}",
                        )
                        return

                    async for line in response.aiter_lines():
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            data = None
                        if not isinstance(data, dict):
                            logger.debug(f"Ignoring malformed pull line for {record.name}: {line}")
                            continue

                        if data.get("error"):
                            self._fail(record, data["error"])
                            return

                        status = data.get("status", "")
                        if status == "success":
                            record.mark_ready()
                            logger.info(f"Model {record.name} pulled successfully")
                            self._notify(record)
                            return

                        record.update_progress(
                            status,
                            completed=data.get("completed"),
                            total=data.get("total"),
                            digest=data.get("digest"),
                        )
                        logger.debug(
                            f"Pull {record.name}: {status} ({int(record.progress * 100)}%)"
                        )
                        self._notify(record)

            self._fail(record, "pull stream ended before reporting success")
        except httpx.HTTPError as e:
            if not record.is_terminal:
                self._fail(record, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error while pulling {record.name}")
            if not record.is_terminal:
                self._fail(record, f"{type(e).__name__}: {e}")

    def _fail(self, record: ModelRecord, diagnostic: str) -> None:
        record.mark_failed(diagnostic)
        logger.error(f"Pull of model {record.name} failed: {diagnostic}")
        self._notify(record)

    def _notify(self, record: ModelRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(record.model_copy())
            except Exception as e:
                logger.warning(f"Progress callback failed for {record.name}: {e}")

    def _get(self, name: str) -> ModelRecord:
        record = self._records.get(name)
        if record is None:
            raise UnknownModelError(name)
        return record

    @staticmethod
    def _error_text(body: bytes) -> Optional[str]:
        """Extract Ollama's ``{"error": ...}`` message from a response body."""
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            text = body.decode("utf-8", errors="replace").strip()
            return text or None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return None

    # -------------------------------------------------------------------------
    # Remote registry
    # -------------------------------------------------------------------------

    async def list_models(self) -> list[ModelRecord]:
        """List models resident on the server (``GET /api/tags``)."""
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
            data = response.json()

        records = []
        for model in data.get("models", []):
            size = model.get("size")
            records.append(
                ModelRecord(
                    name=model.get("name") or model.get("model", ""),
                    pull_status=PullStatus.READY,
                    size_bytes=size,
                    completed_bytes=size or 0,
                    progress=1.0,
                    digest=model.get("digest"),
                    status_message="resident",
                )
            )
        return records

    async def delete_model(self, name: str) -> bool:
        """Delete a model from the server's local storage."""
        async with self._client() as client:
            response = await client.request(
                "DELETE",
                f"{self.base_url}/api/delete",
                json={"name": name},
            )
        if response.status_code == 200:
            logger.info(f"Deleted model {name}")
            self._records.pop(name, None)
            return True
        logger.warning(f"Failed to delete model {name}: {response.status_code} {response.text}")
        return False

    async def aclose(self) -> None:
        """Cancel any pulls still in flight."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
