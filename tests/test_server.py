"""WebSocket message parsing and per-message handling (no sockets opened)."""

from __future__ import annotations

import asyncio
import base64
import json
import threading

import numpy as np
import pytest

import lafam.server
from lafam.config import PipelineConfig, TrackingConfig
from lafam.errors import ConfigError, LafamError, ShapeMismatch
from lafam.grouping import ClassGrouper
from lafam.image import PlanarImage
from lafam.pipeline import FrameProcessor, HeatmapByClass, SelectCells, Track
from lafam.server import TrackingServer, decode_frame, encode_frame, parse_request

CONFIG = PipelineConfig(input_size=8)


def frame_message(width: int = 6, height: int = 4) -> dict:
    rgba = np.full((height, width, 4), 200, dtype=np.uint8)
    return {
        "width": width,
        "height": height,
        "data": base64.b64encode(rgba.tobytes()).decode("ascii"),
    }


class TestFrames:
    def test_decode(self):
        image = decode_frame(frame_message())
        assert (image.n_channels, image.height, image.width) == (3, 4, 6)
        assert np.all(image.channels == 200)

    def test_encode_decode(self):
        image = PlanarImage(np.arange(3 * 2 * 2, dtype=np.float32).reshape(3, 2, 2))
        decoded = decode_frame(encode_frame(image))
        np.testing.assert_array_equal(decoded.channels, image.channels)

    def test_size_mismatch(self):
        message = frame_message()
        message["width"] = 7
        with pytest.raises(ShapeMismatch):
            decode_frame(message)

    def test_missing_fields(self):
        with pytest.raises(ShapeMismatch):
            decode_frame({"width": 2})


class TestParseRequest:
    def test_track_reads_config_from_message(self):
        request = parse_request(
            {"type": "track", "frame": frame_message(), "config": {"threshold": 0.3}},
            CONFIG,
        )
        assert isinstance(request, Track)
        assert request.tensor.shape == (3 * 8 * 8,)
        assert request.config == TrackingConfig(threshold=0.3)

    def test_track_rejects_bad_config(self):
        with pytest.raises(ConfigError):
            parse_request(
                {"type": "track", "frame": frame_message(), "config": {"ema": 3}}, CONFIG
            )

    def test_frame_required(self):
        with pytest.raises(LafamError):
            parse_request({"type": "predict"}, CONFIG)

    def test_select(self):
        request = parse_request(
            {"type": "select", "id": "cup", "cells": [3, 4], "color": [1, 2, 3]}, CONFIG
        )
        assert request == SelectCells(object_id="cup", cells=(3, 4), color=(1, 2, 3))

    def test_heatmap_by_class(self):
        request = parse_request({"type": "heatmap_by_class", "class_idxs": [7]}, CONFIG)
        assert request == HeatmapByClass(class_idxs=(7,))

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "heatmap_by_class", "class_idxs": ["x"]},
            {"type": "heatmap_by_class", "class_idxs": 3},
            {"type": "class_by_heatmap", "cells": "12"},
            {"type": "class_by_heatmap", "cells": [float("inf")]},
            {"type": "select", "id": [1], "cells": [0]},
            {"type": "select", "id": True, "cells": [0]},
            {"type": "select", "id": "cup", "cells": [0], "color": [1, 2]},
            {"type": "select", "id": "cup", "cells": [None]},
            {"type": "remove", "id": {"a": 1}},
        ],
    )
    def test_malformed_fields(self, message):
        with pytest.raises(LafamError):
            parse_request(message, CONFIG)

    def test_non_object_message(self):
        with pytest.raises(LafamError):
            parse_request([1, 2], CONFIG)

    def test_unknown_type(self):
        with pytest.raises(LafamError):
            parse_request({"type": "teleport"}, CONFIG)


class TestProcessMessage:
    def run(self, server: TrackingServer, processor: FrameProcessor, message) -> dict:
        return asyncio.run(server.process_message(processor, message))

    def test_predict(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        processor = FrameProcessor(fake_engine, input_size=8)

        reply = self.run(
            server, processor, json.dumps({"type": "predict", "frame": frame_message()})
        )

        assert reply["type"] == "results"
        assert len(reply["heatmap"]) == 9
        assert server.frames_processed == 1

    def test_cell_classes_with_groups(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG, grouper=ClassGrouper({"wide": [1]}))
        processor = FrameProcessor(fake_engine, input_size=8)

        reply = self.run(
            server, processor, json.dumps({"type": "cell_classes", "frame": frame_message()})
        )

        assert reply["type"] == "cell_classes"
        assert reply["group_map"]["boxes"][0]["name"] == "wide"

    def test_select_and_track(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        processor = FrameProcessor(fake_engine, input_size=8)
        track = json.dumps({"type": "track", "frame": frame_message()})

        self.run(server, processor, track)
        selected = self.run(
            server, processor, json.dumps({"type": "select", "id": "cup", "cells": [0]})
        )
        reply = self.run(server, processor, track)

        assert selected == {"type": "selection", "id": "cup", "state": "embedded", "degenerate": False}
        assert reply["type"] == "tracking"
        assert reply["objects"][0]["status"] == "found"

    def test_invalid_json(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        reply = self.run(server, FrameProcessor(fake_engine), "{not json")
        assert reply["type"] == "error"

    def test_library_errors_are_reported(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        reply = self.run(
            server,
            FrameProcessor(fake_engine),
            json.dumps({"type": "heatmap_by_class", "class_idxs": [0]}),
        )
        assert reply["type"] == "error"
        assert "no frame" in reply["message"]

    def test_missing_field(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        reply = self.run(server, FrameProcessor(fake_engine), json.dumps({"type": "remove"}))
        assert reply["type"] == "error"

    def test_malformed_fields_are_rejected_not_internal(self, fake_engine):
        server = TrackingServer(fake_engine, config=CONFIG)
        processor = FrameProcessor(fake_engine)

        for message in (
            {"type": "select", "id": [1], "cells": [0]},
            {"type": "heatmap_by_class", "class_idxs": ["x"]},
        ):
            reply = self.run(server, processor, json.dumps(message))
            assert reply["type"] == "error"
            assert reply["message"] != "internal error"

    def test_decode_and_grouping_run_off_the_event_loop(self, fake_engine, monkeypatch):
        loop_thread = threading.get_ident()
        seen = []

        def spy(func, name):
            def wrapper(*args, **kwargs):
                seen.append((name, threading.get_ident()))
                return func(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(lafam.server, "preprocess", spy(lafam.server.preprocess, "preprocess"))
        monkeypatch.setattr(lafam.server, "group_map", spy(lafam.server.group_map, "group_map"))
        server = TrackingServer(fake_engine, config=CONFIG, grouper=ClassGrouper({"wide": [1]}))

        reply = self.run(
            server,
            FrameProcessor(fake_engine, input_size=8),
            json.dumps({"type": "cell_classes", "frame": frame_message()}),
        )

        assert reply["type"] == "cell_classes"
        assert [name for name, _ in seen] == ["preprocess", "group_map"]
        assert all(ident != loop_thread for _, ident in seen)
