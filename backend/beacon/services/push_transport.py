from dataclasses import dataclass
from typing import Any, Protocol
import logging

import httpx

from beacon.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    """Outcome of one multicast call.

    ``token_results`` maps token -> error (None on success) when the gateway
    reports per-token outcomes; it is None when only batch counts are known.
    """
    success_count: int
    failure_count: int
    token_results: dict[str, str | None] | None = None


class PushTransport(Protocol):
    async def send_multicast(self, tokens: list[str], notification: dict[str, Any], data: dict[str, str]) -> PushResult:
        ...


class HttpPushTransport:
    """Multicast through an HTTP push gateway (FCM relay style API).

    Request: ``{"tokens": [...], "notification": {...}, "data": {...}}``.
    Response: ``{"successCount": n, "failureCount": m, "responses": [{"success": bool, "error": str}]}``
    where ``responses`` (optional) is index-aligned with ``tokens``.
    """

    def __init__(self, url: str | None, api_key: str | None = None, timeout: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "HttpPushTransport":
        return cls(settings.push_gateway_url, settings.push_gateway_key, settings.push_timeout_seconds)

    async def send_multicast(self, tokens: list[str], notification: dict[str, Any], data: dict[str, str]) -> PushResult:
        if not self.url:
            logger.warning("PUSH_GATEWAY_URL is not set; %d push token(s) not delivered", len(tokens))
            return PushResult(0, len(tokens), {t: "push gateway not configured" for t in tokens})
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json={"tokens": tokens, "notification": notification, "data": data}, headers=headers)
            resp.raise_for_status()
            body = resp.json()
        return self.parse_response(tokens, body)

    @staticmethod
    def parse_response(tokens: list[str], body: dict[str, Any]) -> PushResult:
        success = int(body.get("successCount", 0))
        failure = int(body.get("failureCount", max(len(tokens) - success, 0)))
        responses = body.get("responses")
        if not isinstance(responses, list) or len(responses) != len(tokens):
            return PushResult(success, failure)
        results: dict[str, str | None] = {}
        for token, r in zip(tokens, responses):
            if not isinstance(r, dict):
                r = {}
            error = None if r.get("success") else str(r.get("error") or "push rejected")
            # A token listed twice counts as delivered if any attempt succeeded
            if results.get(token, "") is None:
                continue
            results[token] = error
        return PushResult(success, failure, results)
