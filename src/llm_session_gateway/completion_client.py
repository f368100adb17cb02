from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from llm_session_gateway.errors import CompletionTimeout, RemoteAPIError

DEFAULT_BASE_URL = "https://api.openai.com"
COMPLETIONS_PATH = "/v1/chat/completions"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_STREAM_TIMEOUT_SECONDS = 30.0


@dataclass
class CompletionRequest:
    model: str
    messages: list[dict]
    max_tokens: int
    temperature: float
    n: int = 1
    stop: str | list[str] | None = None

    def to_body(self, *, stream: bool = False) -> dict:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "max_tokens": self.max_tokens,
            "n": self.n,
            "stop": self.stop,
            "temperature": self.temperature,
        }
        if stream:
            body["stream"] = True
        return body


@dataclass
class Completion:
    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_response(cls, data: dict) -> Completion:
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as ex:
            raise RemoteAPIError("Completion response has no choices[0].message", payload=data) from ex
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        total_tokens = int(usage.get("total_tokens") or prompt_tokens + completion_tokens)
        return cls(content, prompt_tokens, completion_tokens, total_tokens)


class CompletionStream:
    """Live Server-Sent-Events body of a streaming completion call."""

    def __init__(self, response: httpx.Response, timeout: float):
        self._response = response
        self._timeout = timeout

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as ex:
            raise CompletionTimeout(self._timeout, streaming=True) from ex
        except httpx.StreamClosed:
            return
        except httpx.HTTPError as ex:
            raise RemoteAPIError(f"Completion stream failed: {ex}") from ex

    async def aclose(self) -> None:
        await self._response.aclose()


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _remote_error(ex: httpx.HTTPStatusError) -> RemoteAPIError:
    response = ex.response
    payload = _error_payload(response)
    detail = ""
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        detail = str(payload["error"].get("message", ""))
    elif isinstance(payload, str):
        detail = payload[:200]
    message = f"Completion API returned HTTP {response.status_code}"
    if detail:
        message += f": {detail}"
    return RemoteAPIError(
        message,
        status_code=response.status_code,
        payload=payload,
    )


class CompletionClient:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        stream_timeout: float = DEFAULT_STREAM_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._url = base_url.rstrip("/") + COMPLETIONS_PATH
        self._request_timeout = request_timeout
        self._stream_timeout = stream_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    async def complete(self, request: CompletionRequest, api_key: str = "") -> Completion:
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(request.messages)}, stream=False"
        )
        try:
            response = await self._client.post(
                self._url,
                json=request.to_body(),
                headers=self._headers(api_key),
                timeout=self._request_timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as ex:
            raise CompletionTimeout(self._request_timeout) from ex
        except httpx.HTTPStatusError as ex:
            raise _remote_error(ex) from ex
        except httpx.HTTPError as ex:
            raise RemoteAPIError(f"Completion request failed: {ex}") from ex

        try:
            data = response.json()
        except ValueError as ex:
            raise RemoteAPIError("Completion response is not JSON", payload=response.text) from ex

        completion = Completion.from_response(data)
        logger.debug(
            f"API response: prompt_tokens={completion.prompt_tokens}, "
            f"completion_tokens={completion.completion_tokens}, total_tokens={completion.total_tokens}"
        )
        return completion

    async def stream(self, request: CompletionRequest, api_key: str = "") -> CompletionStream:
        """Open a streaming call; HTTP errors are raised before the stream is returned."""
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(request.messages)}, stream=True"
        )
        http_request = self._client.build_request(
            "POST",
            self._url,
            json=request.to_body(stream=True),
            headers={**self._headers(api_key), "Accept": "text/event-stream"},
            timeout=self._stream_timeout,
        )
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.TimeoutException as ex:
            raise CompletionTimeout(self._stream_timeout, streaming=True) from ex
        except httpx.HTTPError as ex:
            raise RemoteAPIError(f"Completion request failed: {ex}") from ex

        if response.is_error:
            try:
                await response.aread()
                response.raise_for_status()
            except httpx.HTTPStatusError as ex:
                raise _remote_error(ex) from ex
            except httpx.HTTPError as ex:
                raise RemoteAPIError(
                    f"Completion API returned HTTP {response.status_code}",
                    status_code=response.status_code,
                ) from ex
            finally:
                await response.aclose()

        return CompletionStream(response, self._stream_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers
