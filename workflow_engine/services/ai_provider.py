"""
AI Completion Provider

Narrow interface used by AI and assistant nodes:

    complete(system_prompt, user_prompt, options) -> AIResponse

HTTPCompletionProvider talks to an OpenAI-compatible chat completions
endpoint over httpx.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel, Field

from ..exceptions import ExternalProviderError
from ..logging_config import get_logger

logger = get_logger(__name__)


class AIResponse(BaseModel):
    """Provider result. ``error`` and ``content`` are mutually exclusive."""
    content: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    error: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.error


class AIProvider(ABC):
    """AI completion provider abstraction."""

    name = "ai"

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> AIResponse:
        """Run one completion."""

    async def run_assistant(
        self,
        assistant_id: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> AIResponse:
        """
        Send a message to a configured assistant.

        The default implementation runs a completion with the assistant's
        instructions as system prompt and keeps (or opens) a thread id.
        """
        options = dict(options or {})
        instructions = options.pop("instructions", None) or f"You are the assistant '{assistant_id}'."
        thread_id = options.get("thread_id")
        if not thread_id or thread_id == "new":
            thread_id = f"thread_{uuid4().hex[:24]}"
        response = await self.complete(instructions, message, options)
        if response.ok:
            response.thread_id = response.thread_id or thread_id
        return response

    async def close(self) -> None:
        """Release network resources."""


class HTTPCompletionProvider(AIProvider):
    """OpenAI-compatible chat completions client."""

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> httpx.AsyncClient:
        """Initialize HTTP client"""
        if self.client is None:
            headers = {"User-Agent": "CRM-Workflow-Engine/1.0"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
            logger.info("AI provider client initialized", base_url=self.base_url)
        return self.client

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("AI provider client closed")

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> AIResponse:
        """
        POST /chat/completions.

        Raises:
            ExternalProviderError: On transport errors or non-2xx responses
        """
        options = options or {}
        client = await self.connect()
        model = options.get("model") or self.default_model

        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": options.get("temperature", 0.7),
            "max_tokens": options.get("max_tokens", 1000),
        }
        if options.get("response_format") == "json":
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalProviderError(
                f"AI provider returned {e.response.status_code}",
                provider=self.name,
                details={"status_code": e.response.status_code, "model": model},
            ) from e
        except httpx.HTTPError as e:
            raise ExternalProviderError(
                f"AI provider request failed: {e}",
                provider=self.name,
                details={"model": model},
            ) from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return AIResponse(error=message or "Unknown provider error", model=model)

        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content", "") if choices else ""
        usage = data.get("usage") or {}
        return AIResponse(
            content=content,
            model=data.get("model", model),
            usage={
                "promptTokens": usage.get("prompt_tokens"),
                "completionTokens": usage.get("completion_tokens"),
                "totalTokens": usage.get("total_tokens"),
            },
        )
