"""aiohttp WebSocket client implementing ``RemoteChannel`` against ``/v1/ws``."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Set

import aiohttp

from .errors import SubscriptionFailedError, TransientNetworkError, WriteAcknowledgmentError
from .remote import Document, ErrorCallback, FieldFilter, SnapshotCallback, SortSpec

logger = logging.getLogger(__name__)


class WebSocketSubscription:
    def __init__(self, channel: "WebSocketRemoteChannel", sub_id: str) -> None:
        self._channel = channel
        self.sub_id = sub_id

    def cancel(self) -> None:
        self._channel._cancel(self.sub_id)


class WebSocketRemoteChannel:
    """``RemoteChannel`` over one WebSocket connection.

    Losing the connection ends every open subscription through its
    ``on_error`` callback. Once connected, a later request reconnects first
    if the socket has gone away; ``close()`` turns that off.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.url = url
        self.request_timeout_s = request_timeout_s
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._callbacks: Dict[str, SnapshotCallback] = {}
        self._error_callbacks: Dict[str, ErrorCallback] = {}
        self._connect_lock = asyncio.Lock()
        self._reconnect = False
        self._background: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._reader_task is not None:
                # Let the previous reader finish ending its subscriptions.
                await asyncio.gather(self._reader_task, return_exceptions=True)
                self._reader_task = None
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                self._ws = await self._session.ws_connect(self.url)
            except (aiohttp.ClientError, OSError) as exc:
                raise TransientNetworkError(f"cannot connect to {self.url}: {exc}") from exc
            self._reader_task = asyncio.create_task(self._reader())
            self._reconnect = True
            logger.info("connected url=%s", self.url)

    async def close(self) -> None:
        self._reconnect = False
        self._callbacks.clear()
        self._error_callbacks.clear()
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "WebSocketRemoteChannel":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def write(self, collection: str, record: Document) -> Document:
        reply = await self._request("doc.write", {"collection": collection, "record": record})
        return self._written_doc(reply)

    async def set(self, collection: str, doc_id: str, record: Document) -> Document:
        reply = await self._request("doc.set", {"collection": collection, "doc_id": doc_id, "record": record})
        return self._written_doc(reply)

    async def subscribe(
        self,
        collection: str,
        where: FieldFilter,
        order_by: Optional[SortSpec],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> WebSocketSubscription:
        sub_id = f"s{next(self._ids)}"
        self._callbacks[sub_id] = on_snapshot
        body: Dict[str, Any] = {"sub_id": sub_id, "collection": collection, "where": where.to_wire()}
        if order_by is not None:
            body["order_by"] = order_by.to_wire()
        try:
            reply = await self._request("doc.subscribe", body)
        except BaseException:
            self._callbacks.pop(sub_id, None)
            raise
        if reply.get("t") == "error":
            self._callbacks.pop(sub_id, None)
            code, message = self._error_details(reply)
            raise SubscriptionFailedError(code, message)
        if not self.connected:
            self._callbacks.pop(sub_id, None)
            raise TransientNetworkError("connection lost")
        if on_error is not None:
            self._error_callbacks[sub_id] = on_error
        return WebSocketSubscription(self, sub_id)

    async def _request(self, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.connected:
            if not self._reconnect:
                raise TransientNetworkError("not connected")
            await self.connect()
        request_id = f"r{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            try:
                await self._ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            except (aiohttp.ClientError, ConnectionResetError) as exc:
                raise TransientNetworkError(f"{frame_type} failed: {exc}") from exc
            try:
                return await asyncio.wait_for(future, self.request_timeout_s)
            except asyncio.TimeoutError as exc:
                raise TransientNetworkError(f"{frame_type} timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    def _written_doc(self, reply: Dict[str, Any]) -> Document:
        if reply.get("t") == "error":
            code, message = self._error_details(reply)
            raise WriteAcknowledgmentError(code, message)
        doc = (reply.get("body") or {}).get("doc")
        if not isinstance(doc, dict):
            raise WriteAcknowledgmentError("invalid_reply", "write reply carried no document")
        return doc

    @staticmethod
    def _error_details(reply: Dict[str, Any]) -> tuple[str, str]:
        body = reply.get("body") or {}
        return str(body.get("code") or "unknown"), str(body.get("message") or "")

    def _cancel(self, sub_id: str) -> None:
        self._error_callbacks.pop(sub_id, None)
        if self._callbacks.pop(sub_id, None) is None:
            return
        if self.connected:
            self._spawn(self._send_quietly({"v": 1, "t": "doc.unsubscribe", "body": {"sub_id": sub_id}}))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_quietly(self, frame: Dict[str, Any]) -> None:
        if not self.connected:
            return
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("send failed t=%s: %s", frame.get("t"), exc)

    async def _reader(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed frame")
                        continue
                    if isinstance(frame, dict):
                        self._dispatch(frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransientNetworkError("connection lost"))
            logger.info("disconnected url=%s", self.url)
            self._callbacks.clear()
            error_callbacks, self._error_callbacks = self._error_callbacks, {}
            for sub_id, on_error in error_callbacks.items():
                try:
                    on_error(TransientNetworkError("connection lost"))
                except Exception:
                    logger.exception("error callback failed sub_id=%s", sub_id)

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body")
        if not isinstance(body, dict):
            body = {}
        if frame_type == "doc.snapshot":
            callback = self._callbacks.get(body.get("sub_id"))
            docs = body.get("docs")
            if callback is not None and isinstance(docs, list):
                try:
                    callback(docs)
                except Exception:
                    logger.exception("snapshot callback failed sub_id=%s", body.get("sub_id"))
            return
        if frame_type == "ping":
            self._spawn(self._send_quietly({"v": 1, "t": "pong", "id": frame.get("id")}))
            return
        future = self._pending.get(frame.get("id"))
        if future is not None and not future.done():
            future.set_result(frame)
        else:
            logger.debug("unmatched frame t=%s id=%s", frame_type, frame.get("id"))
