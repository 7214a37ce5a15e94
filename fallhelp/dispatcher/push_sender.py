"""Expo push delivery.

One HTTP request carries up to 100 messages; the response ``data`` array is
index-aligned with the request. Tokens must look like
``ExponentPushToken[...]`` and malformed ones are failed without a request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from fallhelp.shared.config import optional_env
from fallhelp.shared.metrics import push_deliveries_total

logger = logging.getLogger(__name__)

PUSH_API_URL = optional_env("PUSH_API_URL", "https://exp.host/--/api/v2/push/send")
PUSH_REQUEST_TIMEOUT_SECONDS = float(optional_env("PUSH_REQUEST_TIMEOUT_SECONDS", "8"))
EXPO_TOKEN_PREFIX = "ExponentPushToken["
MAX_MESSAGES_PER_REQUEST = 100


@dataclass
class PushMessage:
    token: str
    title: str
    body: str
    data: dict = field(default_factory=dict)

    def to_expo(self) -> dict:
        return {
            "to": self.token,
            "sound": "default",
            "title": self.title,
            "body": self.body,
            "data": self.data,
        }


@dataclass
class PushResult:
    token: str
    success: bool
    error: Optional[str] = None
    ticket_id: Optional[str] = None


def is_valid_push_token(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(EXPO_TOKEN_PREFIX) and token.endswith("]")


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ExpoPushClient:
    """Sends push batches to the Expo push API and reports per-token results."""

    def __init__(
        self,
        url: str = PUSH_API_URL,
        timeout: float = PUSH_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send_batch(self, messages: list[PushMessage]) -> list[PushResult]:
        """Deliver messages, returning one result per input message in order."""
        results: dict[int, PushResult] = {}
        deliverable: list[tuple[int, PushMessage]] = []
        for index, message in enumerate(messages):
            if is_valid_push_token(message.token):
                deliverable.append((index, message))
            else:
                logger.warning("push token rejected: %.30s", message.token or "")
                push_deliveries_total.labels(result="invalid_token").inc()
                results[index] = PushResult(token=message.token, success=False, error="invalid_token")

        if deliverable:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                chunk_results = await asyncio.gather(
                    *(self._send_chunk(client, chunk) for chunk in _chunks(deliverable, MAX_MESSAGES_PER_REQUEST))
                )
            for chunk in chunk_results:
                results.update(chunk)

        ordered = [results[i] for i in range(len(messages))]
        ok = sum(1 for r in ordered if r.success)
        logger.info(
            "push batch sent",
            extra={"push_total": len(messages), "push_ok": ok, "push_failed": len(messages) - ok},
        )
        return ordered

    async def _send_chunk(
        self, client: httpx.AsyncClient, chunk: list[tuple[int, PushMessage]]
    ) -> dict[int, PushResult]:
        body = [message.to_expo() for _, message in chunk]
        try:
            response = await client.post(
                self.url,
                json=body,
                headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Expo push request failed: %s", exc)
            push_deliveries_total.labels(result="error").inc(len(chunk))
            return {i: PushResult(token=m.token, success=False, error=str(exc)) for i, m in chunk}

        if not 200 <= response.status_code < 300:
            error = f"HTTP {response.status_code}"
            logger.warning("Expo push rejected batch: %s", error)
            push_deliveries_total.labels(result="error").inc(len(chunk))
            return {i: PushResult(token=m.token, success=False, error=error) for i, m in chunk}

        try:
            tickets = response.json().get("data") or []
        except (ValueError, AttributeError):
            tickets = []

        out: dict[int, PushResult] = {}
        for position, (index, message) in enumerate(chunk):
            ticket = tickets[position] if position < len(tickets) and isinstance(tickets[position], dict) else {}
            if ticket.get("status") == "ok":
                push_deliveries_total.labels(result="ok").inc()
                out[index] = PushResult(token=message.token, success=True, ticket_id=ticket.get("id"))
            else:
                error = ticket.get("message") or (ticket.get("details") or {}).get("error") or "no ticket"
                push_deliveries_total.labels(result="error").inc()
                out[index] = PushResult(token=message.token, success=False, error=error)
        return out
