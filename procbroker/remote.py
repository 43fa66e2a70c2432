import base64
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .errors import RemoteApiError

ANTHROPIC_VERSION = "2023-06-01"


def _content_text(data: Any) -> str:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")
    blocks = data.get("content") or []
    if not isinstance(blocks, list):
        raise ValueError("content is not a list")
    parts = [
        str(block.get("text") or "")
        for block in blocks
        if isinstance(block, dict) and block.get("type", "text") == "text"
    ]
    return "".join(parts)


class AnthropicClient:
    """Direct Messages API access, used when the CLI path is unavailable."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.anthropic.com/v1",
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 2048,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _payload(
        self,
        prompt: str,
        *,
        system: Optional[str],
        model: Optional[str],
        max_tokens: Optional[int],
        image: Optional[bytes],
        media_type: str,
        stream: bool,
    ) -> Dict[str, Any]:
        content: Any = prompt
        if image is not None:
            content = [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": media_type,
                        "data": base64.b64encode(image).decode("ascii"),
                    },
                },
                {"type": "text", "text": prompt},
            ]
        messages: List[Dict[str, Any]] = [{"role": "user", "content": content}]
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if stream:
            payload["stream"] = True
        return payload

    def _require_key(self) -> None:
        if not self.enabled:
            raise RemoteApiError("missing_api_key")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                err = data.get("error")
                if isinstance(err, dict) and err.get("message"):
                    return str(err["message"])
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        image: Optional[bytes] = None,
        media_type: str = "image/png",
    ) -> str:
        self._require_key()
        payload = self._payload(
            prompt,
            system=system,
            model=model,
            max_tokens=max_tokens,
            image=image,
            media_type=media_type,
            stream=False,
        )
        try:
            resp = await self.client.post(f"{self.base_url}/messages", json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._error_detail(exc.response)
            raise RemoteApiError(f"HTTP {exc.response.status_code}: {detail}", exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise RemoteApiError(f"request_failed: {exc}") from exc
        try:
            return _content_text(resp.json())
        except ValueError as exc:
            raise RemoteApiError(f"invalid response: {exc}", resp.status_code) from exc

    async def stream_text(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[str, None]:
        self._require_key()
        payload = self._payload(
            prompt,
            system=system,
            model=model,
            max_tokens=max_tokens,
            image=None,
            media_type="image/png",
            stream=True,
        )
        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/messages", json=payload, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    detail = self._error_detail(response)
                    raise RemoteApiError(f"HTTP {response.status_code}: {detail}", response.status_code)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        continue
                    if not isinstance(data, dict):
                        continue
                    event_type = data.get("type")
                    if event_type == "error":
                        error = data.get("error")
                        message = error.get("message") if isinstance(error, dict) else error
                        raise RemoteApiError(str(message or "stream error"))
                    if event_type == "message_stop":
                        break
                    if event_type != "content_block_delta":
                        continue
                    delta = data.get("delta")
                    text = delta.get("text") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield text
        except httpx.RequestError as exc:
            raise RemoteApiError(f"request_failed: {exc}") from exc

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
