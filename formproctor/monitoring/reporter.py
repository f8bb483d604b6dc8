import asyncio
import logging
from typing import Optional, Set

import httpx

from ..models.schemas import Violation

logger = logging.getLogger(__name__)


class ViolationReporter:
    """
    Fire-and-forget delivery of accepted violations to the ingestion endpoint.

    Failed deliveries are logged and dropped; the local record is never
    touched and nothing is retried.
    """

    def __init__(
        self,
        form_id: str,
        endpoint_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self.form_id = form_id
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._pending: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def report(self, violation: Violation) -> Optional[asyncio.Task]:
        """Schedule delivery of one violation and return immediately."""
        if not self.enabled:
            return None

        try:
            task = asyncio.get_running_loop().create_task(self._deliver(violation))
        except RuntimeError:
            logger.warning(f"No running event loop, violation {violation.type.value} not reported")
            return None

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, violation: Violation) -> bool:
        payload = {"formId": self.form_id, "violation": violation.to_wire()}
        try:
            response = await self._get_client().post(self.endpoint_url, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.failed += 1
            logger.warning(f"Failed to report {violation.type.value} for form {self.form_id}: {e}")
            return False

        if not response.is_success:
            self.failed += 1
            logger.warning(
                f"Ingestion endpoint rejected {violation.type.value} for form {self.form_id}: "
                f"{response.status_code} - {response.text}"
            )
            return False

        self.delivered += 1
        return True

    async def flush(self, timeout: float = 2.0):
        """Wait for in-flight deliveries, cancelling any that outlive timeout."""
        pending = set(self._pending)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()

    async def aclose(self, timeout: float = 2.0):
        await self.flush(timeout)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
