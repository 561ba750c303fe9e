"""
External Effect Dispatcher

Email, notification, HITL alerts and similar side effects leave the engine
through a single opaque call:

    dispatch(effect_type, payload) -> receipt
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from ..exceptions import ExternalProviderError
from ..logging_config import get_logger

logger = get_logger(__name__)


class EffectDispatcher(ABC):
    """Sends side effects to external services."""

    @abstractmethod
    async def dispatch(self, effect_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deliver one effect.

        Returns:
            Receipt dictionary (at least ``dispatched`` and ``effect_id``)

        Raises:
            ExternalProviderError: If delivery fails
        """

    async def close(self) -> None:
        """Release network resources."""


class InMemoryEffectDispatcher(EffectDispatcher):
    """Records effects in memory. Used in development and tests."""

    def __init__(self):
        self.dispatched: List[Dict[str, Any]] = []

    async def dispatch(self, effect_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        effect_id = str(uuid4())
        self.dispatched.append({
            "effect_id": effect_id,
            "effect_type": effect_type,
            "payload": payload,
            "dispatched_at": datetime.utcnow().isoformat(),
        })
        logger.info("Effect dispatched", effect_type=effect_type, effect_id=effect_id)
        return {"dispatched": True, "effect_id": effect_id}

    def of_type(self, effect_type: str) -> List[Dict[str, Any]]:
        return [effect for effect in self.dispatched if effect["effect_type"] == effect_type]


class WebhookEffectDispatcher(EffectDispatcher):
    """Posts effects as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self.client

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def dispatch(self, effect_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._client()
        effect_id = str(uuid4())
        body = {"effect_id": effect_id, "effect_type": effect_type, "payload": payload}
        try:
            response = await client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalProviderError(
                f"Effect delivery failed: {e}",
                provider=effect_type,
                details={"url": self.url},
            ) from e

        logger.info("Effect delivered", effect_type=effect_type, effect_id=effect_id, status_code=response.status_code)
        receipt: Dict[str, Any] = {"dispatched": True, "effect_id": effect_id}
        if response.content:
            try:
                receipt["response"] = response.json()
            except ValueError:
                receipt["response"] = response.text
        return receipt
