"""End-to-end tests for detection-driven predictions.

The Twitch API is replaced by a scripted transport; everything else
(matching, state machine, credentials, prediction client, history) is real.
"""

from __future__ import annotations

import json
import threading
from unittest.mock import Mock

import numpy as np
import pytest

import app.pipeline.state_machine as state_machine_module
from app.events.error_bus import ErrorCategory, ErrorEventBus
from app.events.event_types import PredictionUpdatedEvent
from app.pipeline.matching_loop import MatchingLoop
from app.pipeline.state_machine import DetectionStateMachine
from app.services.orchestrator import MonitorSession, PredictionOrchestrator
from capture import FrameSource, SimulatedCamera
from configs.settings import PredictionConfig
from contracts import Frame, GameState, MatchResult, PredictionStatus, Roi, Trigger
from detect.triggers import TriggerSet
from integrations.twitch.credentials import CredentialManager
from integrations.twitch.http import HttpResponse
from integrations.twitch.oauth_config import HELIX_BASE_URL, TwitchOAuthConfig
from integrations.twitch.predictions import PredictionClient
from integrations.twitch.tokens import MemoryTokenStore
from record.history import MemoryHistorySink

PREDICTIONS_URL = f"{HELIX_BASE_URL}/predictions"

START_ROI = Roi(10, 10, 40, 30)
WIN_ROI = Roi(120, 60, 40, 30)
LOSE_ROI = Roi(220, 150, 40, 30)

CREATED = {
    "data": [
        {
            "id": "pred-1",
            "status": "ACTIVE",
            "outcomes": [{"id": "out-win", "title": "Win"}, {"id": "out-lose", "title": "Lose"}],
        }
    ]
}


def _crop(image, roi):
    return image[roi.y:roi.y + roi.height, roi.x:roi.x + roi.width].copy()


def _search(roi):
    return Roi(roi.x - 10, roi.y - 10, roi.width + 20, roi.height + 20)


def _screen(base, *visible):
    """A frame where only the listed trigger regions show their template."""
    rng = np.random.default_rng(7)
    screen = rng.integers(0, 256, size=base.shape, dtype=np.uint8)
    for roi in visible:
        screen[roi.y:roi.y + roi.height, roi.x:roi.x + roi.width] = _crop(base, roi)
    return screen


def _frame(image):
    return Frame("0", 1, 0, image, image.shape[1], image.shape[0])


def _patch_bodies(transport):
    return [json.loads(call[3].decode("utf-8")) for call in transport.calls_to("PATCH", PREDICTIONS_URL)]


@pytest.fixture(autouse=True)
def fast_rearm(monkeypatch):
    monkeypatch.setattr(state_machine_module, "MIN_RESOLVED_DELAY_S", 0.0)


@pytest.fixture
def triggers(noise_image):
    return TriggerSet(
        start=Trigger("start", _search(START_ROI), _crop(noise_image, START_ROI), 0.80),
        win=Trigger("win", _search(WIN_ROI), _crop(noise_image, WIN_ROI), 0.80),
        lose=Trigger("lose", _search(LOSE_ROI), _crop(noise_image, LOSE_ROI), 0.80),
    )


class Harness:
    def __init__(self, transport, token, triggers, resolved_delay=30.0):
        self.transport = transport
        self.store = MemoryTokenStore(token)
        self.credentials = CredentialManager(
            _oauth(), self.store, transport=transport, clock=lambda: 1_700_000_000.0
        )
        if token is not None:
            self.credentials._token = token
        self.machine = DetectionStateMachine(resolved_delay_seconds=resolved_delay)
        self.loop = MatchingLoop(Mock(), self.machine, triggers)
        self.history = MemoryHistorySink()
        self.error_bus = ErrorEventBus()
        self.dispatcher = Mock()
        self.orchestrator = PredictionOrchestrator(
            self.machine,
            self.credentials,
            PredictionClient(self.credentials),
            settings=PredictionConfig(title="Will we win?"),
            history=self.history,
            confidence_source=lambda: self.loop.last_confidence,
            dispatcher=self.dispatcher,
            error_bus=self.error_bus,
        )

    def show(self, image):
        result = self.loop.process_frame(_frame(image))
        assert self.orchestrator.wait_idle(timeout=5.0)
        return result

    def published(self):
        return [
            call[0][0] for call in self.dispatcher.publish.call_args_list
            if isinstance(call[0][0], PredictionUpdatedEvent)
        ]

    def close(self):
        self.orchestrator.shutdown()
        self.machine.shutdown()


def _oauth():
    return TwitchOAuthConfig("client-id", "client-secret", "http://127.0.0.1:0/callback/")


@pytest.fixture
def harness(transport, make_token, triggers, respond):
    transport.on("POST", PREDICTIONS_URL, respond(200, CREATED))
    transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))
    h = Harness(transport, make_token(), triggers)
    yield h
    h.close()


@pytest.fixture
def offline_harness(transport, triggers):
    h = Harness(transport, None, triggers)
    yield h
    h.close()


class TestStartCreatesPrediction:
    """Start screen while authenticated."""

    def test_voting_with_created_handle(self, harness, noise_image):
        harness.machine.start()

        assert harness.show(_screen(noise_image, START_ROI)) == MatchResult.START

        assert harness.machine.state == GameState.VOTING
        handle = harness.orchestrator.handle
        assert handle.status == PredictionStatus.CREATED
        assert handle.prediction_id == "pred-1"
        assert handle.outcome_ids == ["out-win", "out-lose"]

        entries = harness.history.load()
        assert [e.event_type for e in entries] == ["start"]
        assert entries[0].prediction_id == "pred-1"
        assert entries[0].prediction_status == PredictionStatus.CREATED
        assert entries[0].confidence >= 0.80

    def test_create_request(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))

        body = json.loads(harness.transport.calls_to("POST", PREDICTIONS_URL)[0][3].decode("utf-8"))
        assert body["title"] == "Will we win?"
        assert [o["title"] for o in body["outcomes"]] == ["Win", "Lose"]
        assert body["prediction_window"] == 60

    def test_create_failure_recorded_as_failed(self, harness, noise_image, respond):
        harness.transport.on("POST", PREDICTIONS_URL, respond(400, {"message": "already active"}))
        harness.machine.start()

        harness.show(_screen(noise_image, START_ROI))

        assert harness.machine.state == GameState.VOTING
        assert harness.orchestrator.handle is None
        assert harness.orchestrator.status == PredictionStatus.FAILED
        assert harness.history.load()[0].prediction_status == PredictionStatus.FAILED
        assert harness.error_bus.get_history(category=ErrorCategory.PREDICTION)


class TestOutcomeResolvesPrediction:
    """Win or lose screen while a prediction is live."""

    def test_win_resolves_and_rearms(self, transport, make_token, triggers, respond, noise_image, wait_until):
        transport.on("POST", PREDICTIONS_URL, respond(200, CREATED))
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))
        h = Harness(transport, make_token(), triggers, resolved_delay=0.2)
        try:
            h.machine.start()
            h.show(_screen(noise_image, START_ROI))

            assert h.show(_screen(noise_image, WIN_ROI, LOSE_ROI)) == MatchResult.WIN

            assert h.machine.state == GameState.RESOLVED
            assert h.orchestrator.handle is None
            assert _patch_bodies(transport) == [
                {"broadcaster_id": "1234", "id": "pred-1", "status": "RESOLVED", "winning_outcome_id": "out-win"}
            ]
            assert [e.event_type for e in h.history.load()] == ["start", "win"]
            assert h.published()[-1].status == PredictionStatus.RESOLVED

            assert wait_until(lambda: h.machine.state == GameState.IDLE)
        finally:
            h.close()

    def test_lose_picks_second_outcome(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))

        assert harness.show(_screen(noise_image, LOSE_ROI)) == MatchResult.LOSE

        assert _patch_bodies(harness.transport)[0]["winning_outcome_id"] == "out-lose"

    def test_resolve_failure_still_clears_handle(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))
        harness.transport.on("PATCH", PREDICTIONS_URL, HttpResponse(500, b"server error"))

        harness.show(_screen(noise_image, WIN_ROI))

        assert harness.orchestrator.handle is None
        assert len(_patch_bodies(harness.transport)) == 1
        assert harness.published()[-1].status == PredictionStatus.FAILED
        assert [e.event_type for e in harness.history.load()] == ["start", "win"]

    def test_new_round_cancels_stale_prediction(self, harness, noise_image, respond):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))
        harness.machine.reset()
        harness.transport.on(
            "POST", PREDICTIONS_URL,
            respond(200, {"data": [{"id": "pred-2", "outcomes": [{"id": "a"}, {"id": "b"}]}]}),
        )

        harness.show(_screen(noise_image, START_ROI))

        assert _patch_bodies(harness.transport)[0] == {"broadcaster_id": "1234", "id": "pred-1", "status": "CANCELED"}
        assert harness.orchestrator.handle.prediction_id == "pred-2"


class TestWithoutSession:
    """No authenticated session: detection and history continue without remote calls."""

    def test_lose_without_session(self, offline_harness, noise_image):
        h = offline_harness
        h.machine.start()
        h.show(_screen(noise_image, START_ROI))
        assert h.machine.state == GameState.VOTING

        h.show(_screen(noise_image, LOSE_ROI))

        assert h.machine.state == GameState.RESOLVED
        assert h.transport.calls == []
        assert h.orchestrator.handle is None
        assert h.orchestrator.status == PredictionStatus.NONE
        entries = h.history.load()
        assert [e.event_type for e in entries] == ["start", "lose"]
        assert entries[1].prediction_status == PredictionStatus.NONE
        assert entries[1].prediction_id == ""


class TestStopCancelsPrediction:
    """Stop while a prediction is live."""

    def _cancel_count_at_stop(self, h):
        seen = []

        def on_change(change):
            if change.state == GameState.STOPPED:
                seen.append(len(h.transport.calls_to("PATCH", PREDICTIONS_URL)))

        h.machine.subscribe(on_change)
        return seen

    def test_cancel_before_stopped(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))
        seen = self._cancel_count_at_stop(harness)

        harness.orchestrator.stop()

        assert seen == [1]
        assert harness.machine.state == GameState.STOPPED
        assert _patch_bodies(harness.transport)[0]["status"] == "CANCELED"
        assert harness.orchestrator.handle is None
        assert harness.published()[-1].status == PredictionStatus.CANCELED

    def test_stopped_even_if_cancel_fails(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))
        harness.transport.on("PATCH", PREDICTIONS_URL, HttpResponse(503, b"unavailable"))
        seen = self._cancel_count_at_stop(harness)

        harness.orchestrator.stop()

        assert seen == [1]
        assert harness.machine.state == GameState.STOPPED
        assert harness.orchestrator.handle is None
        assert harness.published()[-1].status == PredictionStatus.FAILED

    def test_stop_without_prediction(self, harness):
        harness.machine.start()
        harness.orchestrator.stop()
        assert harness.machine.state == GameState.STOPPED
        assert harness.transport.calls == []

    def test_create_finishing_after_stop_is_canceled(self, transport, make_token, triggers, noise_image):
        """A create still in flight when stop() runs is canceled once it lands."""
        entered = threading.Event()
        release = threading.Event()

        def slow_create(*args):
            entered.set()
            release.wait(5.0)
            return HttpResponse(200, json.dumps(CREATED).encode("utf-8"))

        transport.on("POST", PREDICTIONS_URL, slow_create)
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))
        h = Harness(transport, make_token(), triggers)
        try:
            h.machine.start()
            h.loop.process_frame(_frame(_screen(noise_image, START_ROI)))
            assert entered.wait(5.0)

            h.orchestrator.stop()
            release.set()
            assert h.orchestrator.wait_idle(timeout=5.0)

            assert h.machine.state == GameState.STOPPED
            assert h.orchestrator.handle is None
            assert _patch_bodies(transport)[0]["status"] == "CANCELED"
        finally:
            h.close()


class TestOrchestratorCommands:
    def test_lock_prediction(self, harness, noise_image):
        harness.machine.start()
        harness.show(_screen(noise_image, START_ROI))

        harness.orchestrator.lock_prediction().result(timeout=5.0)

        assert _patch_bodies(harness.transport)[0]["status"] == "LOCKED"
        assert harness.orchestrator.handle is not None

    def test_lock_without_prediction(self, harness):
        harness.orchestrator.lock_prediction().result(timeout=5.0)
        assert harness.transport.calls == []

    def test_history_failure_is_reported(self, harness, noise_image):
        broken = Mock()
        broken.record.side_effect = OSError("disk full")
        harness.orchestrator._history = broken
        harness.machine.start()

        harness.show(_screen(noise_image, START_ROI))

        assert harness.orchestrator.handle is not None
        assert harness.error_bus.get_history(category=ErrorCategory.HISTORY)

    def test_shutdown_detaches(self, harness, noise_image):
        harness.orchestrator.shutdown()
        harness.machine.start()
        harness.loop.process_frame(_frame(_screen(noise_image, START_ROI)))

        assert harness.machine.state == GameState.VOTING
        assert harness.transport.calls == []


class TestMonitorSession:
    """Full pipeline from a simulated camera."""

    def test_camera_to_resolved_prediction(self, transport, make_token, triggers, respond, noise_image, wait_until):
        transport.on("POST", PREDICTIONS_URL, respond(200, CREATED))
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))

        camera = SimulatedCamera(fps=100.0)
        camera.set_image(_screen(noise_image))
        frame_source = FrameSource(lambda: camera, target_fps=100.0)
        store = MemoryTokenStore(make_token())
        credentials = CredentialManager(_oauth(), store, transport=transport, clock=lambda: 1_700_000_000.0)
        credentials._token = store.load()
        machine = DetectionStateMachine(resolved_delay_seconds=30)
        loop = MatchingLoop(frame_source, machine, triggers, period_s=0.02)
        history = MemoryHistorySink()
        orchestrator = PredictionOrchestrator(
            machine, credentials, PredictionClient(credentials), history=history,
            confidence_source=lambda: loop.last_confidence,
        )
        session = MonitorSession(frame_source, machine, loop, orchestrator)

        session.start("0", noise_image.shape[1], noise_image.shape[0])
        try:
            assert session.is_running
            assert session.state == GameState.IDLE

            camera.set_image(_screen(noise_image, START_ROI))
            assert wait_until(lambda: orchestrator.handle is not None, timeout=5.0)

            camera.set_image(_screen(noise_image, WIN_ROI))
            assert wait_until(lambda: session.state == GameState.RESOLVED, timeout=5.0)
            assert orchestrator.wait_idle(timeout=5.0)
            assert [e.event_type for e in history.load()] == ["start", "win"]
            assert _patch_bodies(transport)[0]["status"] == "RESOLVED"
        finally:
            session.close()

        assert not session.is_running
        assert machine.state == GameState.STOPPED
