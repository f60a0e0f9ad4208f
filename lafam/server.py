"""
WebSocket worker for the explanation and tracking pipeline.

Clients send captured frames (RGBA, base64) and follow-up requests as JSON;
each connection gets its own FrameProcessor. A connection's messages are
handled one at a time, so at most one frame per client is in flight. The
numeric work runs in a thread to keep the event loop responsive.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

import numpy as np
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from lafam.config import PipelineConfig, TrackingConfig
from lafam.engine import InferenceEngine
from lafam.errors import ConfigError, LafamError, ShapeMismatch
from lafam.grouping import ClassGrouper
from lafam.image import PlanarImage
from lafam.pipeline import (
    CellClasses,
    CellClassesResult,
    ClassByHeatmap,
    FrameProcessor,
    HeatmapByClass,
    Predict,
    RemoveObject,
    Request,
    SelectCells,
    Track,
    group_map,
    preprocess,
)

logger = logging.getLogger(__name__)


def decode_frame(frame: dict[str, Any]) -> PlanarImage:
    """
    Decode a captured frame message.

    Args:
        frame: {"width": int, "height": int, "data": base64 RGBA bytes}
    """
    try:
        width = int(frame["width"])
        height = int(frame["height"])
        raw = base64.b64decode(frame["data"])
    except (KeyError, TypeError, ValueError) as e:
        raise ShapeMismatch(f"malformed frame: {e}") from e
    pixels = np.frombuffer(raw, dtype=np.uint8)
    return PlanarImage.from_image_data(pixels, width=width, height=height)


def encode_frame(image: PlanarImage) -> dict[str, Any]:
    """Inverse of ``decode_frame``."""
    rgba = image.to_image_data()
    return {
        "width": image.width,
        "height": image.height,
        "data": base64.b64encode(rgba.tobytes()).decode("ascii"),
    }


def parse_request(message: dict[str, Any], config: PipelineConfig) -> Request:
    """Turn a decoded JSON message into a typed request."""
    if not isinstance(message, dict):
        raise LafamError("messages must be JSON objects")
    kind = message.get("type")

    if kind in ("predict", "cell_classes", "track"):
        if "frame" not in message:
            raise LafamError(f"{kind!r} request needs a frame")
        _, tensor = preprocess(decode_frame(message["frame"]), config)
        if kind == "predict":
            return Predict(tensor=tensor)
        if kind == "cell_classes":
            return CellClasses(tensor=tensor)
        overrides = message.get("config") or {}
        if not isinstance(overrides, dict):
            raise ConfigError("tracking config must be a JSON object")
        tracking = TrackingConfig.from_dict({**vars(config.tracking), **overrides})
        return Track(tensor=tensor, config=tracking)

    if kind == "heatmap_by_class":
        return HeatmapByClass(class_idxs=_int_tuple(message, "class_idxs"))
    if kind == "class_by_heatmap":
        return ClassByHeatmap(cells=_int_tuple(message, "cells"))
    if kind == "select":
        color = _int_tuple(message, "color") if message.get("color") is not None else None
        if color is not None and len(color) != 3:
            raise LafamError(f"color must be an RGB triple, got {list(color)}")
        return SelectCells(
            object_id=_object_id(message),
            cells=_int_tuple(message, "cells", default=()),
            color=color,
        )
    if kind == "remove":
        return RemoveObject(object_id=_object_id(message))

    raise LafamError(f"unknown request type {kind!r}")


def _int_tuple(
    message: dict[str, Any], key: str, default: tuple[int, ...] | None = None
) -> tuple[int, ...]:
    if key not in message and default is not None:
        return default
    if key not in message:
        raise LafamError(f"request is missing {key!r}")
    values = message[key]
    if isinstance(values, (str, bytes, dict)):
        raise LafamError(f"{key!r} must be a list of integers, got {values!r}")
    try:
        return tuple(int(v) for v in values)
    except (TypeError, ValueError, OverflowError) as e:
        raise LafamError(f"{key!r} must be a list of integers: {e}") from e


def _object_id(message: dict[str, Any]) -> str | int:
    if "id" not in message:
        raise LafamError("request is missing 'id'")
    object_id = message["id"]
    if isinstance(object_id, bool) or not isinstance(object_id, (str, int)):
        raise LafamError(f"object id must be a string or integer, got {object_id!r}")
    return object_id


class TrackingServer:
    """WebSocket server running the pipeline for connected clients."""

    def __init__(
        self,
        engine: InferenceEngine,
        host: str = "localhost",
        port: int = 8770,
        config: PipelineConfig | None = None,
        grouper: ClassGrouper | None = None,
    ):
        """
        Initialize server.

        Args:
            engine: Backbone used for every client
            host: Interface to bind
            port: Port to serve on
            config: Model-input and default tracking settings
            grouper: Optional class grouping for group maps
        """
        self.engine = engine
        self.host = host
        self.port = port
        self.config = config or PipelineConfig()
        self.grouper = grouper

        self.clients: set[ServerConnection] = set()
        self.frames_processed = 0

    def respond(self, processor: FrameProcessor, message: str | bytes) -> dict[str, Any]:
        """
        Decode, run and serialize one message.

        Blocking: frame decoding, preprocessing, inference and group maps
        all happen here, so callers on the event loop go through a thread.
        """
        data = json.loads(message)
        request = parse_request(data, self.config)
        result = processor.handle(request)
        reply = result.to_dict()
        if isinstance(result, CellClassesResult) and self.grouper is not None:
            reply["group_map"] = group_map(result, self.grouper).to_dict(self.grouper)
        return reply

    async def process_message(
        self, processor: FrameProcessor, message: str | bytes
    ) -> dict[str, Any]:
        """Handle one client message off the event loop and build the reply."""
        before = processor.frames_processed
        try:
            reply = await asyncio.to_thread(self.respond, processor, message)
        except json.JSONDecodeError as e:
            logger.error(f"JSON decode error: {e}")
            return {"type": "error", "message": f"invalid JSON: {e}"}
        except LafamError as e:
            logger.warning(f"Rejected request: {e}")
            return {"type": "error", "message": str(e)}
        except Exception as e:
            logger.error(f"Error processing message: {e}", exc_info=True)
            return {"type": "error", "message": "internal error"}
        finally:
            self.frames_processed += processor.frames_processed - before

        return reply

    async def handle_client(self, websocket: ServerConnection):
        """Serve one client until it disconnects."""
        self.clients.add(websocket)
        logger.info(f"Client connected. Total clients: {len(self.clients)}")
        processor = FrameProcessor(self.engine, input_size=self.config.input_size)

        try:
            await websocket.send(
                json.dumps({"type": "ready", "input_size": self.config.input_size})
            )
            async for message in websocket:
                reply = await self.process_message(processor, message)
                await websocket.send(json.dumps(reply))
        except ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            logger.info(f"Client disconnected. Total clients: {len(self.clients)}")

    async def run(self):
        async with serve(self.handle_client, self.host, self.port):
            logger.info(f"Serving on ws://{self.host}:{self.port}")
            await asyncio.Event().wait()
