from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
import json
import logging
from typing import Any

import httpx

from agent_chat.core.errors import AuthError, NetworkError, ProtocolError, SessionError, StreamTimeoutError
from agent_chat.schemas.messages import RunStatus
from agent_chat.services.chat_stream import WireEvent, parse_sse_lines
from agent_chat.services.contracts import CredentialsProtocol

logger = logging.getLogger(__name__)


def map_http_error(exc: httpx.HTTPError) -> SessionError:
    """Translate an httpx failure into the session error taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return AuthError(message=f"agent service rejected credentials ({status})", status_code=status)
        mapped_status = 502 if status >= 500 else status
        return NetworkError(message=f"agent service returned {status}", status_code=mapped_status)
    if isinstance(exc, httpx.TimeoutException):
        return StreamTimeoutError(message=str(exc) or "agent service timed out", status_code=504)
    return NetworkError(message=str(exc) or "agent service unreachable", status_code=502)


class LangGraphTransport:
    """HTTP client for a LangGraph-style agent server."""

    def __init__(
        self,
        *,
        endpoint_url: str,
        agent_id: str,
        credentials: CredentialsProtocol | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._agent_id = agent_id
        self._credentials = credentials
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(base_url=endpoint_url.rstrip("/"), timeout=timeout_seconds)

    async def create_thread(self, metadata: Mapping[str, Any] | None = None) -> dict[str, str]:
        payload = await self._request("POST", "/threads", body={"metadata": dict(metadata or {})})
        thread_id = payload.get("thread_id") or payload.get("id")
        if not isinstance(thread_id, str) or not thread_id:
            raise ProtocolError("thread creation response carries no thread id")
        return {"id": thread_id}

    async def open_stream(self, thread_id: str | None, *, messages: Sequence[Mapping[str, Any]]) -> AsyncIterator[WireEvent]:
        body: dict[str, Any] = {
            "assistant_id": self._agent_id,
            "input": {"messages": list(messages)},
            "stream_mode": ["messages"],
        }
        if thread_id is None:
            path = "/runs/stream"
            body["on_completion"] = "keep"
        else:
            path = f"/threads/{thread_id}/runs/stream"

        headers = await self._headers()
        headers["Accept"] = "text/event-stream"
        try:
            async with self._client.stream("POST", path, json=body, headers=headers) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for event in self._to_wire_events(parse_sse_lines(response.aiter_lines()), thread_id):
                    yield event
        except httpx.HTTPError as exc:
            raise map_http_error(exc) from exc

    async def cancel_stream(self, thread_id: str, run_id: str) -> None:
        try:
            await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")
        except SessionError:
            logger.warning("run cancellation failed", extra={"thread_id": thread_id, "run_id": run_id})

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    async def rename_thread(self, thread_id: str, title: str) -> None:
        await self._request("PATCH", f"/threads/{thread_id}", body={"metadata": {"title": title}})

    async def batch_delete_threads(self, thread_ids: Sequence[str]) -> None:
        failed: list[str] = []
        for thread_id in thread_ids:
            try:
                await self.delete_thread(thread_id)
            except SessionError:
                logger.warning("thread deletion failed", extra={"thread_id": thread_id})
                failed.append(thread_id)
        if failed:
            raise NetworkError(message=f"failed to delete threads: {', '.join(failed)}")

    async def create_run(self, thread_id: str, *, messages: Sequence[Mapping[str, Any]]) -> str:
        payload = await self._request(
            "POST",
            f"/threads/{thread_id}/runs",
            body={"assistant_id": self._agent_id, "input": {"messages": list(messages)}},
        )
        run_id = payload.get("run_id")
        if not isinstance(run_id, str) or not run_id:
            raise ProtocolError("run creation response carries no run id")
        return run_id

    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        payload = await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        status = str(payload.get("status") or "pending")
        return RunStatus(
            status=status,
            completed_at=payload.get("updated_at"),
            error="Run failed" if status == "error" else None,
        )

    async def get_thread_messages(self, thread_id: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", f"/threads/{thread_id}/state")
        values = payload.get("values")
        if not isinstance(values, Mapping):
            return []
        messages = values.get("messages")
        if not isinstance(messages, list):
            return []
        return [message for message in messages if isinstance(message, dict)]

    async def health_check(self) -> bool:
        try:
            await self._request("POST", "/assistants/search", body={"limit": 1})
        except SessionError:
            logger.warning("agent service health check failed")
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key
        if self._credentials is not None:
            token = await self._credentials.get_access_token()
            if not token:
                raise AuthError(message="no access token available", status_code=401)
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, *, body: Any = None) -> dict[str, Any]:
        headers = await self._headers()
        try:
            response = await self._client.request(method, path, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise map_http_error(exc) from exc
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("agent service returned a non-JSON body", extra={"path": path, "status_code": response.status_code})
            raise ProtocolError("agent service returned a non-JSON body") from exc
        return payload if isinstance(payload, dict) else {"items": payload}

    async def _to_wire_events(
        self,
        sse_events: AsyncIterator[tuple[str, str]],
        thread_id: str | None,
    ) -> AsyncIterator[WireEvent]:
        run_id: str | None = None
        async for event_name, raw_data in sse_events:
            try:
                data = json.loads(raw_data) if raw_data else None
            except json.JSONDecodeError:
                logger.warning("skipping malformed stream payload", extra={"event": event_name})
                continue

            if event_name == "metadata" and isinstance(data, Mapping):
                run_id = data.get("run_id") or run_id
                thread_id = data.get("thread_id") or thread_id

            ids: dict[str, str] = {}
            if thread_id:
                ids["thread_id"] = thread_id
            if run_id:
                ids["run_id"] = run_id

            if event_name in ("messages/partial", "messages/complete"):
                final = event_name == "messages/complete"
                for message in data if isinstance(data, list) else [data]:
                    yield {"kind": "fragment", "data": message, "merge": "full", "final": final, **ids}
            elif event_name == "messages":
                yield {"kind": "fragment", "data": data, "merge": "delta", **ids}
            elif event_name == "error":
                yield {"kind": "error", "data": data, **ids}
            elif event_name == "end":
                yield {"kind": "end", "data": data, **ids}
            else:
                yield {"kind": event_name, "data": data, **ids}
