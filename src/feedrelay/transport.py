from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .models import SendReceipt, Target


class TransportError(RuntimeError):
    pass


class Transport(Protocol):
    def send(self, target: Target, text: str) -> SendReceipt: ...

    def get_status(self) -> dict[str, Any]: ...


class WebhookTransport:
    """Posts rendered messages as JSON to a messaging gateway.

    The gateway is expected to expose ``POST {base}/send`` returning
    ``{"message_id": ...}`` and ``GET {base}/status`` returning ``{"status": ...}``.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout_seconds: int = 20,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("feedrelay.transport")

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict:
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = Request(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:500]
            raise TransportError(f"HTTP {exc.code} from gateway: {detail}") from exc
        except URLError as exc:
            raise TransportError(f"Gateway unreachable: {exc.reason}") from exc
        except (TimeoutError, OSError) as exc:
            raise TransportError(f"Gateway request failed: {exc}") from exc
        if not body:
            return {}
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransportError("Gateway returned invalid JSON") from exc
        return decoded if isinstance(decoded, dict) else {}

    def send(self, target: Target, text: str) -> SendReceipt:
        response = self._request(
            "POST",
            "/send",
            {"to": target.address, "type": target.type, "text": text},
        )
        if response.get("error"):
            raise TransportError(str(response["error"]))
        message_id = response.get("message_id") or response.get("id")
        return SendReceipt(message_id=str(message_id) if message_id else None)

    def get_status(self) -> dict[str, Any]:
        try:
            return self._request("GET", "/status")
        except TransportError as exc:
            return {"status": "unreachable", "error": str(exc)}
