"""
Generation strategies.

A strategy is a tag; ``StrategyDispatcher.attempt(strategy, agent_id)`` is the
single entry point that routes it to a handler. Pipeline-backed strategies go
to the external generation service; the emergency placeholder is minted
locally and has no external dependency.
"""
from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Protocol

import httpx

logger = logging.getLogger("dailydrop.generation")


class StrategyName(str, Enum):
    PRIMARY = "primary"
    ALTERNATE_PROMPT = "alternate_prompt"
    DRAFT_POOL = "draft_pool"
    BACKUP_MODEL = "backup_model"
    EMERGENCY_PLACEHOLDER = "emergency_placeholder"


DEFAULT_CHAIN = (
    StrategyName.PRIMARY,
    StrategyName.ALTERNATE_PROMPT,
    StrategyName.DRAFT_POOL,
    StrategyName.BACKUP_MODEL,
    StrategyName.EMERGENCY_PLACEHOLDER,
)

PIPELINE_STRATEGIES = (
    StrategyName.PRIMARY,
    StrategyName.ALTERNATE_PROMPT,
    StrategyName.DRAFT_POOL,
    StrategyName.BACKUP_MODEL,
)


class GenerationPipeline(Protocol):
    async def generate(self, agent_id: str, strategy: StrategyName) -> Optional[str]:
        """Return an artifact id, or None when this strategy has nothing."""
        ...


class HttpGenerationPipeline:
    """Client for the external generation service.

    POST {base_url}/generate {"agent_id", "strategy"} -> {"artifact_id": ...}.
    404/204/409 or an empty id mean "not available"; other HTTP errors raise
    and are treated by the chain as a failed attempt.
    """

    NOT_AVAILABLE_STATUSES = {204, 404, 409}

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def generate(self, agent_id: str, strategy: StrategyName) -> Optional[str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self._base_url}/generate",
                json={"agent_id": agent_id, "strategy": strategy.value},
                headers=headers,
            )
        if response.status_code in self.NOT_AVAILABLE_STATUSES:
            return None
        response.raise_for_status()
        artifact_id = (response.json() or {}).get("artifact_id")
        return str(artifact_id) if artifact_id else None


class UnavailablePipeline:
    """Used when no generation service is configured: every strategy is empty."""

    async def generate(self, agent_id: str, strategy: StrategyName) -> Optional[str]:
        return None


class PlaceholderFactory:
    """Mints emergency placeholder artifact ids locally.

    Ids carry no date: the drop log records the agent-local day the drop fills.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    async def create(self, agent_id: str) -> Optional[str]:
        if not self.enabled:
            return None
        drop_id = f"emergency-{agent_id}-{uuid.uuid4().hex[:12]}"
        logger.warning("[generation] creating emergency placeholder drop", extra={"agent_id": agent_id, "drop_id": drop_id})
        return drop_id


Handler = Callable[[str], Awaitable[Optional[str]]]


class StrategyDispatcher:
    """Routes strategy tags to handlers; new strategies only need ``register``."""

    def __init__(self, pipeline: GenerationPipeline, placeholder: Optional[PlaceholderFactory] = None):
        self._handlers: Dict[StrategyName, Handler] = {}
        for strategy in PIPELINE_STRATEGIES:
            self.register(strategy, _pipeline_handler(pipeline, strategy))
        self.register(StrategyName.EMERGENCY_PLACEHOLDER, (placeholder or PlaceholderFactory()).create)

    def register(self, strategy: StrategyName, handler: Handler) -> None:
        self._handlers[strategy] = handler

    async def attempt(self, strategy: StrategyName, agent_id: str) -> Optional[str]:
        handler = self._handlers.get(strategy)
        if handler is None:
            raise KeyError(f"No handler registered for strategy {strategy.value}")
        return await handler(agent_id)


def _pipeline_handler(pipeline: GenerationPipeline, strategy: StrategyName) -> Handler:
    async def handler(agent_id: str) -> Optional[str]:
        return await pipeline.generate(agent_id, strategy)

    return handler
