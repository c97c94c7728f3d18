"""
Gemini Client
=============

Async client for the Gemini generateContent endpoint.

Features:
- Direct calls (API key in the query string) or calls through the site
  proxy, which takes {"endpoint": "<model>:generateContent", "body": {...}}
- Minimum interval between calls (default 2s)
- Typed transport errors: 429 -> RateLimitError, other non-2xx ->
  TransportError (status + body), network failures -> retryable
  TransportError

Responses are not cached.

Usage:
    client = GeminiClient()
    raw = await client.generate(prompt, Attempt(2200, 0.7))
    text = classify_response(raw)
    await client.close()
"""

import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp

import config
from attempt_policy import Attempt
from plan_errors import RateLimitError, TransportError
from tools.logging_utils import get_logger

logger = get_logger(__name__)


class GeminiClient:
    """Sequential generateContent caller with a fixed call throttle."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 proxy_url: Optional[str] = None, api_base: Optional[str] = None,
                 min_interval: Optional[float] = None, timeout: Optional[float] = None):
        gemini = config.get_gemini_config()
        self.api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self.model = model or gemini["model"]
        self.proxy_url = proxy_url if proxy_url is not None else gemini.get("proxy_url")
        self.api_base = api_base or gemini["api_base"]
        self.min_interval = min_interval if min_interval is not None else float(gemini["min_request_interval"])
        self.timeout = timeout if timeout is not None else float(gemini["request_timeout"])

        self._session: Optional[aiohttp.ClientSession] = None
        self._last_call: Optional[float] = None

        self.stats = {
            "total_requests": 0,
            "errors": 0,
            "rate_limited": 0,
            "throttle_wait_seconds": 0.0,
            "total_time": 0.0,
            "avg_response_time": 0.0,
        }

    @property
    def endpoint(self) -> str:
        return f"{self.model}:generateContent"

    def build_request(self, prompt: str, attempt: Attempt,
                      response_schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the proxy-style request: {"endpoint": ..., "body": ...}."""
        request = {
            "endpoint": self.endpoint,
            "body": {
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "maxOutputTokens": attempt.max_output_tokens,
                    "temperature": attempt.temperature,
                    "topP": attempt.top_p,
                    "topK": attempt.top_k,
                    "response_mime_type": "application/json",
                },
            },
        }
        if attempt.use_schema and response_schema:
            request["body"]["generationConfig"]["response_schema"] = response_schema
        return request

    def _target(self, request: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """URL and JSON payload for either the proxy or the API itself."""
        if self.proxy_url:
            return self.proxy_url, request
        if not self.api_key:
            raise TransportError("GEMINI_API_KEY is not configured and no proxy_url is set", status=401)
        return f"{self.api_base}/{request['endpoint']}?key={self.api_key}", request["body"]

    async def _throttle(self) -> None:
        if self._last_call is None or self.min_interval <= 0:
            return
        wait = self.min_interval - (time.monotonic() - self._last_call)
        if wait > 0:
            logger.debug(f"⏳ Throttling {wait:.2f}s before next generation call")
            self.stats["throttle_wait_seconds"] += wait
            await asyncio.sleep(wait)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def _post(self, url: str, payload: Dict[str, Any]) -> Tuple[int, str]:
        """POST JSON, return (status, body text). Network failures raise TransportError."""
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError as e:
            raise TransportError(f"Generation request timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Generation request failed: {e}") from e

    async def generate(self, prompt: str, attempt: Attempt,
                       response_schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make one generateContent call.

        Returns:
            The decoded API response (candidates, promptFeedback, usageMetadata)

        Raises:
            RateLimitError: HTTP 429
            TransportError: any other non-2xx status, network error or
                undecodable body
        """
        await self._throttle()

        request = self.build_request(prompt, attempt, response_schema)
        url, payload = self._target(request)

        start_time = time.time()
        self._last_call = time.monotonic()
        self.stats["total_requests"] += 1
        try:
            status, body = await self._post(url, payload)
        except TransportError:
            self.stats["errors"] += 1
            raise
        finally:
            elapsed = time.time() - start_time
            self.stats["total_time"] += elapsed
            self.stats["avg_response_time"] = self.stats["total_time"] / self.stats["total_requests"]

        if status == 429:
            self.stats["rate_limited"] += 1
            logger.error("❌ Gemini rate limit reached (429)")
            raise RateLimitError(body)
        if not 200 <= status < 300:
            self.stats["errors"] += 1
            logger.error(f"❌ Gemini error {status}: {body[:500]}")
            raise TransportError(f"Gemini error {status}", status=status, body=body)

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            self.stats["errors"] += 1
            raise TransportError(f"Gemini returned a non-JSON body: {body[:200]}", status=status, body=body) from e
        if not isinstance(data, dict):
            self.stats["errors"] += 1
            raise TransportError("Gemini returned an unexpected JSON payload", status=status, body=body)

        logger.debug(f"✅ generateContent {status} in {elapsed:.1f}s "
                     f"(max_output={attempt.max_output_tokens}, temp={attempt.temperature})")
        return data

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
