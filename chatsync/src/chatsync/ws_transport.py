from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Dict, Optional

from aiohttp import WSCloseCode, WSMsgType, web

from .remote import ASCENDING, DESCENDING, Document, FieldFilter, SortSpec
from .store import DocumentStore, QuerySubscription, RecordRejected

logger = logging.getLogger(__name__)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _snapshot_frame(sub_id: str, docs: list[Document]) -> dict[str, Any]:
    return {"v": 1, "t": "doc.snapshot", "body": {"sub_id": sub_id, "docs": docs}}


def _parse_filter(raw: Any) -> Optional[FieldFilter]:
    if not isinstance(raw, dict):
        return None
    field_name = raw.get("field")
    if not isinstance(field_name, str) or not field_name or "value" not in raw:
        return None
    return FieldFilter(field_name, raw["value"])


def _parse_sort(raw: Any) -> Optional[SortSpec]:
    if not isinstance(raw, dict):
        return None
    field_name = raw.get("field")
    direction = raw.get("direction", ASCENDING)
    if not isinstance(field_name, str) or not field_name or direction not in {ASCENDING, DESCENDING}:
        return None
    return SortSpec(field_name, direction)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    store: DocumentStore = request.app["store"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    request.app["websockets"].add(ws)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=ws_config["max_queue"])
    subscriptions: Dict[str, QuerySubscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        logger.warning("closing websocket: %s", message)
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    def drop_subscription(sub_id: str) -> None:
        subscription = subscriptions.pop(sub_id, None)
        if subscription is not None:
            store.unsubscribe(subscription)

    def handle_frame(frame: dict) -> None:
        request_id = frame.get("id")
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if not isinstance(body, dict):
            enqueue(_error_frame("invalid_request", "body must be an object", request_id=request_id))
            return

        if frame_type == "ping":
            enqueue({"v": 1, "t": "pong", "id": request_id})
        elif frame_type == "pong":
            return
        elif frame_type in {"doc.write", "doc.set"}:
            collection = body.get("collection")
            record = body.get("record")
            if not isinstance(collection, str) or not isinstance(record, dict):
                enqueue(_error_frame("invalid_request", "collection and record required", request_id=request_id))
                return
            try:
                if frame_type == "doc.write":
                    doc = store.append(collection, record)
                else:
                    doc_id = body.get("doc_id")
                    if not isinstance(doc_id, str) or not doc_id:
                        enqueue(_error_frame("invalid_request", "doc_id required", request_id=request_id))
                        return
                    doc = store.put(collection, doc_id, record)
            except RecordRejected as exc:
                enqueue(_error_frame(exc.code, str(exc), request_id=request_id))
                return
            enqueue({"v": 1, "t": "doc.written", "id": request_id, "body": {"doc": doc}})
        elif frame_type == "doc.subscribe":
            sub_id = body.get("sub_id")
            collection = body.get("collection")
            where = _parse_filter(body.get("where"))
            order_by = _parse_sort(body.get("order_by"))
            if not isinstance(sub_id, str) or not sub_id or not isinstance(collection, str) or where is None:
                enqueue(_error_frame("invalid_request", "sub_id, collection and where required", request_id=request_id))
                return
            if body.get("order_by") is not None and order_by is None:
                enqueue(_error_frame("invalid_request", "malformed order_by", request_id=request_id))
                return
            drop_subscription(sub_id)

            def push(docs: list[Document], sub_id: str = sub_id) -> None:
                enqueue(_snapshot_frame(sub_id, docs))

            try:
                subscription = store.subscribe(collection, where, order_by, push, deliver_initial=False)
            except RecordRejected as exc:
                enqueue(_error_frame(exc.code, str(exc), request_id=request_id))
                return
            subscriptions[sub_id] = subscription
            enqueue({"v": 1, "t": "doc.subscribed", "id": request_id, "body": {"sub_id": sub_id}})
            enqueue(_snapshot_frame(sub_id, store.query(collection, where, order_by)))
        elif frame_type == "doc.unsubscribe":
            sub_id = body.get("sub_id")
            if isinstance(sub_id, str):
                drop_subscription(sub_id)
            enqueue({"v": 1, "t": "doc.unsubscribed", "id": request_id, "body": {"sub_id": sub_id}})
        else:
            enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue
                handle_frame(frame)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        request.app["websockets"].discard(ws)
        heartbeat_task.cancel()
        for sub_id in list(subscriptions):
            drop_subscription(sub_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


def create_app(
    *,
    store: DocumentStore | None = None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    max_queue: int = 1000,
    start_presence_sweeper: bool = True,
) -> web.Application:
    store = store or DocumentStore()
    app = web.Application()
    app["store"] = store
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "max_queue": max_queue,
    }
    app["websockets"] = weakref.WeakSet()
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_presence(_: web.Application) -> None:
        if start_presence_sweeper:
            store.start_sweeper()

    async def stop_presence(_: web.Application) -> None:
        await store.stop_sweeper()

    async def close_websockets(app: web.Application) -> None:
        for ws in list(app["websockets"]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    app.on_startup.append(start_presence)
    app.on_shutdown.append(close_websockets)
    app.on_cleanup.append(stop_presence)
    return app
