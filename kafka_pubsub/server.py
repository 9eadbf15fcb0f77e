"""HTTP/WebSocket gateway over KafkaPubSub.

HTTP: health, stats, publish. WebSocket: ping, subscribe, unsubscribe, publish.
"""

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kafka_pubsub.codec import decode_payload
from kafka_pubsub.config import KafkaOptions
from kafka_pubsub.errors import (
    BrokerConnectionError,
    DecodeError,
    EngineClosedError,
    PublishError,
    PubSubError,
    TopicNotFoundError,
    UnknownSubscriptionError,
)
from kafka_pubsub.observability import get_logger
from kafka_pubsub.protocol import (
    HealthResponse,
    PublishedResponse,
    stats_response,
    ws_ack,
    ws_error,
    ws_event,
    ws_pong,
    ws_ts,
    ERROR_BAD_REQUEST,
    ERROR_BROKER_UNAVAILABLE,
    ERROR_INTERNAL,
    ERROR_TOPIC_NOT_FOUND,
    ERROR_UNKNOWN_SUBSCRIPTION,
)
from kafka_pubsub.pubsub import KafkaPubSub

logger = get_logger("kafka_pubsub.server")

router = APIRouter(prefix="/api/v1")


def _error_status(error: PubSubError) -> int:
    if isinstance(error, TopicNotFoundError):
        return 404
    if isinstance(error, EngineClosedError):
        return 503
    return 502


def _error_code(error: PubSubError) -> str:
    if isinstance(error, TopicNotFoundError):
        return ERROR_TOPIC_NOT_FOUND
    if isinstance(error, UnknownSubscriptionError):
        return ERROR_UNKNOWN_SUBSCRIPTION
    if isinstance(error, (BrokerConnectionError, PublishError, EngineClosedError)):
        return ERROR_BROKER_UNAVAILABLE
    return ERROR_INTERNAL


# ---- Health ----

@router.get("/health")
def health(request: Request) -> JSONResponse:
    """GET /health → { uptime_sec, channels, subscriptions }."""
    pubsub: KafkaPubSub = request.app.state.pubsub
    body = HealthResponse(
        uptime_sec=time.time() - request.app.state.start_time,
        channels=len(pubsub.registry.channels()),
        subscriptions=pubsub.registry.subscription_count(),
    ).to_dict()
    return JSONResponse(content=body, status_code=200)


# ---- Stats ----

@router.get("/stats")
def stats(request: Request) -> JSONResponse:
    """GET /stats → { channels: { name: listeners }, metrics: { counters, gauges } }."""
    pubsub: KafkaPubSub = request.app.state.pubsub
    body = stats_response(pubsub.registry.stats(), pubsub.metrics.snapshot())
    return JSONResponse(content=body, status_code=200)


# ---- Publish ----

class PublishBody(BaseModel):
    channel: str
    payload: Any = None


@router.post("/publish")
async def publish(body: PublishBody, request: Request) -> JSONResponse:
    """POST /publish { channel, payload } → 202, 404 (topic missing) or 502 (broker)."""
    channel = body.channel.strip()
    if not channel:
        return JSONResponse(content={"error": "channel is required"}, status_code=400)
    pubsub: KafkaPubSub = request.app.state.pubsub
    try:
        await pubsub.publish(channel, body.payload)
    except PubSubError as e:
        return JSONResponse(
            content={"error": str(e), "channel": channel},
            status_code=_error_status(e),
        )
    return JSONResponse(
        content=PublishedResponse(channel=channel).to_dict(),
        status_code=202,
    )


# ---- WebSocket (ping, subscribe, unsubscribe, publish) ----

class _Connection:
    """Per-socket state: its subscriptions and the sends scheduled by listeners."""

    def __init__(self, websocket: WebSocket, pubsub: KafkaPubSub) -> None:
        self.websocket = websocket
        self.pubsub = pubsub
        self.subscriptions: set = set()
        self._pending: set = set()

    async def send(self, payload: dict) -> None:
        try:
            await self.websocket.send_json(payload)
        except Exception as e:
            logger.warning("ws_send_failed", extra={"error": str(e)})

    def schedule(self, payload: dict) -> None:
        """Queue a send from a (synchronous) listener."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def make_listener(self, channel: str, box: dict):
        use_headers = self.pubsub.options.use_headers

        def listener(payload: Any) -> None:
            if use_headers:
                try:
                    payload = decode_payload(payload)
                except DecodeError as e:
                    self.schedule(ws_error(None, ERROR_BAD_REQUEST, str(e), ws_ts()))
                    return
            self.schedule(ws_event(channel, box.get("id"), payload, ws_ts()))
        return listener

    def release(self) -> None:
        for subscription_id in list(self.subscriptions):
            try:
                self.pubsub.unsubscribe(subscription_id)
            except UnknownSubscriptionError:
                pass
        self.subscriptions.clear()
        for task in list(self._pending):
            task.cancel()


@router.websocket("/ws")
async def websocket_handler(websocket: WebSocket) -> None:
    """
    WebSocket endpoint. Messages: ping, subscribe, unsubscribe, publish.
    Server replies: pong, ack, event, error.
    """
    await websocket.accept()
    conn = _Connection(websocket, websocket.app.state.pubsub)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Invalid JSON", ws_ts()))
                continue
            if not isinstance(msg, dict):
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Expected an object", ws_ts()))
                continue
            msg_type = msg.get("type")
            request_id = msg.get("request_id")

            if msg_type == "ping":
                await websocket.send_json(ws_pong(msg.get("request_id", ""), ws_ts()))
                continue

            if msg_type == "subscribe":
                channel = msg.get("channel")
                if not channel or not isinstance(channel, str):
                    await websocket.send_json(ws_error(
                        request_id, ERROR_BAD_REQUEST,
                        "subscribe requires channel",
                        ws_ts(),
                    ))
                    continue
                box: dict = {}
                try:
                    subscription_id = await conn.pubsub.subscribe(channel, conn.make_listener(channel, box))
                except PubSubError as e:
                    await websocket.send_json(ws_error(request_id, _error_code(e), str(e), ws_ts()))
                    continue
                box["id"] = subscription_id
                conn.subscriptions.add(subscription_id)
                await websocket.send_json(ws_ack(request_id, channel, ws_ts(), subscription_id))
                continue

            if msg_type == "unsubscribe":
                subscription_id = msg.get("subscription_id")
                if subscription_id not in conn.subscriptions:
                    await websocket.send_json(ws_error(
                        request_id, ERROR_UNKNOWN_SUBSCRIPTION,
                        f"Subscription {subscription_id!r} not found on this connection",
                        ws_ts(),
                    ))
                    continue
                conn.subscriptions.discard(subscription_id)
                channel, _listener = conn.pubsub.registry.get(subscription_id) or (None, None)
                conn.pubsub.unsubscribe(subscription_id)
                await websocket.send_json(ws_ack(request_id, channel, ws_ts(), subscription_id))
                continue

            if msg_type == "publish":
                channel = msg.get("channel")
                if not channel or not isinstance(channel, str):
                    await websocket.send_json(ws_error(
                        request_id, ERROR_BAD_REQUEST,
                        "publish requires channel",
                        ws_ts(),
                    ))
                    continue
                try:
                    await conn.pubsub.publish(channel, msg.get("payload"))
                except PubSubError as e:
                    await websocket.send_json(ws_error(request_id, _error_code(e), str(e), ws_ts()))
                    continue
                await websocket.send_json(ws_ack(request_id, channel, ws_ts()))
                continue

            await websocket.send_json(ws_error(
                request_id, ERROR_BAD_REQUEST,
                f"Unknown type: {msg_type!r}",
                ws_ts(),
            ))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception("ws_handler_failed", extra={"error": str(e)})
        try:
            await websocket.send_json(ws_error(
                None, ERROR_INTERNAL,
                f"Unexpected server error: {e!s}",
                ws_ts(),
            ))
        except Exception:
            pass
    finally:
        conn.release()


def create_app(options: Optional[KafkaOptions] = None, **engine_kwargs: Any) -> FastAPI:
    """Build the gateway. Without options they are read from the environment (and .env)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        opts = options
        if opts is None:
            load_dotenv()
            opts = KafkaOptions.from_env()
        app.state.pubsub = KafkaPubSub(opts, **engine_kwargs)
        app.state.start_time = time.time()
        logger.info("gateway_started", extra={"topic": opts.topic, "brokers": opts.broker_list()})
        yield
        try:
            await app.state.pubsub.close()
        except PubSubError as e:
            logger.error("gateway_close_failed", extra={"error": str(e)})

    app = FastAPI(title="Kafka Pub-Sub API", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
