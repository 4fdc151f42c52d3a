"""
HTTP emitter used by the proximity tracker.
Posts transitions to /geofence/event; failures are logged and dropped.
"""
from typing import Optional

import httpx
import structlog

from ..config import settings
from .proximity import Transition


logger = structlog.get_logger(__name__)


class GeofenceEventClient:
    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        active_business_id: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token
        self.active_business_id = active_business_id
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.tracker_request_timeout_seconds
        )

    def _headers(self) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"}
        if self.active_business_id:
            headers["X-Active-Business-Id"] = str(self.active_business_id)
        return headers

    @staticmethod
    def payload_for(transition: Transition) -> dict:
        return {
            "project_id": transition.project_id,
            "time_entry_id": transition.time_entry_id,
            "event_type": transition.event_type,
            "lat": transition.lat,
            "lng": transition.lng,
            "occurred_at": transition.occurred_at.isoformat(),
            "source": "web",
        }

    async def emit(self, transition: Transition) -> None:
        """Send once. No retry: the next poll is the retry."""
        try:
            response = await self._client.post(
                f"{self.base_url}/geofence/event",
                json=self.payload_for(transition),
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            if not settings.is_production:
                logger.warning(
                    "geofence_event_post_failed",
                    project_id=transition.project_id,
                    event_type=transition.event_type,
                    error=str(e),
                )

    async def aclose(self) -> None:
        await self._client.aclose()
