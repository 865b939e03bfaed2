import logging
from typing import Any, Dict, Optional

import httpx

from coordinator.domain.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)

# Worth retrying: the request may succeed later unchanged
RETRYABLE_STATUS = {408, 425, 429}


class NotificationClient:
    """
    Outbound calls to the member-facing notification / incentive API.

    Every call carries an Idempotency-Key so a re-delivered job repeating a
    send does not notify the member twice. Failures are mapped onto the
    queue's error taxonomy: TransientError is retried with backoff,
    PermanentError dead-letters the job.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def _post(self, path: str, json_body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        try:
            resp = await self.client.post(
                path,
                json=json_body,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error calling {path}: {e}") from e

        status_code = resp.status_code
        if status_code in RETRYABLE_STATUS or status_code >= 500:
            logger.warning(f"Notification API {path} returned {status_code}, will retry")
            raise TransientError(f"{path} returned {status_code}")
        if status_code >= 400:
            logger.info(f"Notification API {path} rejected request status={status_code}")
            raise PermanentError(f"{path} rejected request with {status_code}")

        if not resp.content:
            return {}
        return resp.json()

    async def send_reminder(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        user_id: Optional[str],
        attempt: int,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Asks the API to nudge the member about a failed payment."""
        return await self._post(
            "/v1/notifications/payment-reminder",
            {
                "tenant_id": tenant_id,
                "membership_id": membership_id,
                "user_id": user_id,
                "attempt": attempt,
            },
            idempotency_key,
        )

    async def add_free_days(
        self,
        tenant_id: str,
        membership_id: str,
        days: int,
        *,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        return await self._post(
            f"/v1/memberships/{membership_id}/free-days",
            {"tenant_id": tenant_id, "days": days},
            idempotency_key,
        )

    async def close(self):
        await self.client.aclose()
