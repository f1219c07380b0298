"""Async client for an OpenRouter-compatible chat-completions API.

The content-generation collaborator for section workers. Every failure mode
(HTTP error, timeout, transport error, empty or malformed body) surfaces as
:class:`GenerationError`, which workers turn into fallback content.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from threatscribe.config import settings

logger = structlog.get_logger().bind(component="openrouter")

_SYSTEM_PROMPT = (
    "You are a cybersecurity expert and researcher. Provide comprehensive, detailed, "
    "and accurate cybersecurity research. Format your response in markdown. "
    "Be thorough and professional."
)


class GenerationError(RuntimeError):
    """The generator could not produce usable text."""


class ContentGenerator(Protocol):
    """What the orchestrator and section workers need from a generator."""

    async def generate_outline(self, topic: str, depth: int) -> str: ...

    async def generate_section_content(
        self,
        topic: str,
        section_title: str,
        section_description: str,
        depth: int,
    ) -> str: ...

    async def close(self) -> None: ...


class OpenRouterClient:
    """Chat-completions client used as the research content generator.

    Args:
        api_key:  Bearer token (defaults to settings).
        base_url: API base URL, e.g. ``https://openrouter.ai/api/v1``.
        model:    Model identifier.
        timeout:  Per-request timeout in seconds; expiry is a GenerationError.
        transport: Optional httpx transport (inject ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_url).rstrip("/")
        self.model = model or settings.openrouter_model
        self.timeout = timeout if timeout is not None else settings.generation_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "X-Title": "threatscribe",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ---- Inference ----

    async def generate(self, prompt: str, max_tokens: int) -> str:
        """Send one prompt, return the assistant text.

        Raises:
            GenerationError: on any transport, HTTP or payload problem.
        """
        client = await self._get_client()
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": 0.7,
            "top_p": 0.9,
            "stream": False,
        }

        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("generation_timeout", model=self.model, timeout=self.timeout)
            raise GenerationError(f"generation timed out after {self.timeout:.0f}s") from exc
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            logger.warning("generation_http_error", status=exc.response.status_code, detail=detail)
            raise GenerationError(f"HTTP {exc.response.status_code}: {detail}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("generation_failed", error=str(exc))
            raise GenerationError(str(exc) or type(exc).__name__) from exc

        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("malformed completion payload") from exc
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("empty completion")

        logger.debug("chat_completion", model=self.model, usage=result.get("usage"))
        return content.strip()

    async def generate_outline(self, topic: str, depth: int) -> str:
        prompt = (
            f'Generate a comprehensive research outline for the cybersecurity topic: "{topic}"\n\n'
            f"Depth level: {depth}/5 (where 1=basic, 5=expert)\n\n"
            "Create a detailed outline that covers:\n"
            "1. Current threat landscape and recent developments\n"
            "2. Emerging vulnerabilities and attack vectors\n"
            "3. Defense strategies and countermeasures\n"
            "4. Industry best practices and standards\n"
            "5. Future predictions and recommendations\n\n"
            "Format as markdown with clear sections and subsections. "
            f'Be specific to the topic "{topic}" and adjust detail level based on depth {depth}.'
        )
        return await self.generate(prompt, settings.outline_max_tokens)

    async def generate_section_content(
        self,
        topic: str,
        section_title: str,
        section_description: str,
        depth: int,
    ) -> str:
        prompt = (
            f'Write a comprehensive cybersecurity research section on "{section_title}" '
            f'for the topic: "{topic}"\n\n'
            f"Section focus: {section_description}\n"
            f"Research depth: {depth}/5 (adjust detail accordingly)\n\n"
            "Requirements:\n"
            "- Provide current, accurate cybersecurity information\n"
            "- Include specific examples, tools, and techniques where relevant\n"
            "- Use proper markdown formatting with headers, lists, and emphasis\n"
            "- Include actionable insights and recommendations\n"
            f'- Focus specifically on "{topic}" throughout the content\n\n'
            "Write 800-1200 words with proper structure and formatting."
        )
        return await self.generate(prompt, settings.generation_max_tokens)

    # ---- Health ----

    async def health(self) -> dict[str, Any]:
        """Probe the models endpoint. Never raises."""
        try:
            client = await self._get_client()
            response = await client.get("/models")
            response.raise_for_status()
            models = response.json().get("data", [])
            return {"status": "ok", "models": len(models)}
        except Exception as exc:
            return {"status": "unreachable", "error": str(exc)}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message", err))[:200]
        if err:
            return str(err)[:200]
    return str(body)[:200]


def build_generator() -> OpenRouterClient | None:
    """Generator from settings, or None when no API key is configured."""
    if not settings.openrouter_api_key:
        logger.info("generator_disabled", reason="no openrouter_api_key — fallback content only")
        return None
    return OpenRouterClient()
