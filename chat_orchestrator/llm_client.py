from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .config import Settings
from .errors import OperationTimeoutError, UpstreamError
from .retry import RetryPolicy, retry_async
from .sse import iter_content

logger = logging.getLogger(__name__)


class ChatCompletionClient:
    """Streams `choices[0].delta.content` from an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
            self,
            *,
            provider: str,
            base_url: str,
            api_key: str,
            model: str,
            config: Settings,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.config = config
        self.transport = transport

    def _payload(self, messages: List[Dict[str, Any]], temperature: float, max_tokens: Optional[int]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "temperature": temperature,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        return body

    async def _open(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> httpx.Response:
        request = client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "text/event-stream"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.provider} request timed out", provider=self.provider) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.provider} request failed: {e}", provider=self.provider) from e

        if response.status_code >= 400:
            detail = (await response.aread()).decode("utf-8", errors="replace")[:500]
            await response.aclose()
            logger.error("%s API error status=%s body=%s", self.provider, response.status_code, detail)
            raise UpstreamError(
                f"{self.provider} API error {response.status_code}: {detail}",
                provider=self.provider,
                upstream_status=response.status_code,
            )
        return response

    async def stream(
            self,
            messages: List[Dict[str, Any]],
            *,
            temperature: Optional[float] = None,
            max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        if not self.api_key:
            raise UpstreamError(f"{self.provider} API key not configured", provider=self.provider, upstream_status=401)

        cfg = self.config
        body = self._payload(messages, cfg.default_temperature if temperature is None else temperature, max_tokens)
        timeout = httpx.Timeout(cfg.upstream_timeout_seconds, connect=min(10.0, cfg.upstream_timeout_seconds))

        logger.info("calling %s model=%s messages=%d", self.provider, self.model, len(messages))
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            # only opening the stream is retried; once bytes flow a failure ends the stream
            response = await retry_async(
                lambda: self._open(client, body),
                RetryPolicy.from_settings(cfg),
                retry_on=(UpstreamError,),
                should_retry=lambda e: isinstance(e, UpstreamError) and e.retryable,
                label=f"{self.provider} request",
            )
            chunks = 0
            try:
                async for text in iter_content(response.aiter_bytes(), provider=self.provider):
                    chunks += 1
                    yield text
            except httpx.TimeoutException as e:
                raise OperationTimeoutError(f"{self.provider} stream read", cfg.upstream_timeout_seconds) from e
            except httpx.HTTPError as e:
                raise UpstreamError(f"{self.provider} stream interrupted: {e}", provider=self.provider) from e
            finally:
                await response.aclose()
            logger.info("%s streaming completed chunks=%d", self.provider, chunks)
