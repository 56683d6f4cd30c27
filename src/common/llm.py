from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any, AsyncIterator

import litellm

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True

logger = logging.getLogger(__name__)


async def acompletion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    temperature: float = 0.0,
    max_tokens: int = 4096,
    **kwargs,
) -> Any:
    params = {
        "model": model,
        "messages": messages,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
        **kwargs,
    }
    return await litellm.acompletion(**params)


class LiteLLMBackend:
    """Streams completion tokens from litellm.

    ``cancel()`` may be called from another task while ``stream()`` is being
    consumed; the stream stops at the next chunk boundary and the underlying
    response is closed.
    """

    def __init__(self) -> None:
        self._cancel_event = asyncio.Event()
        self._response: Any = None

    async def stream(
        self,
        messages: list[dict],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        top_p: float | None = None,
        frequency_penalty: float | None = None,
        presence_penalty: float | None = None,
        system_prompt: str | None = None,
        extra_body: dict | None = None,
    ) -> AsyncIterator[str]:
        self._cancel_event.clear()
        api_messages = (
            ([{"role": "system", "content": system_prompt}] if system_prompt else [])
            + list(messages)
        )
        kwargs: dict[str, Any] = {}
        if top_p is not None:
            kwargs["top_p"] = top_p
        if frequency_penalty is not None:
            kwargs["frequency_penalty"] = frequency_penalty
        if presence_penalty is not None:
            kwargs["presence_penalty"] = presence_penalty
        if extra_body:
            kwargs.update(extra_body)

        self._response = await acompletion(
            model=model,
            messages=api_messages,
            stream=True,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        try:
            async for chunk in self._response:
                if self._cancel_event.is_set():
                    break
                delta = chunk.choices[0].delta
                if hasattr(delta, "content") and delta.content:
                    yield delta.content
        finally:
            await self._close_response()

    def cancel(self) -> None:
        self._cancel_event.set()

    async def _close_response(self) -> None:
        response, self._response = self._response, None
        closer = getattr(response, "aclose", None)
        if closer is None:
            return
        try:
            await closer()
        except Exception as e:
            logger.debug(f"Ignoring error while closing stream: {e}")
