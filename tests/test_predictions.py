"""Tests for the Helix predictions client."""

from __future__ import annotations

import json

import pytest

from exceptions import AuthenticationRequiredError, PredictionError
from integrations.twitch.credentials import CredentialManager
from integrations.twitch.http import HttpResponse
from integrations.twitch.oauth_config import HELIX_BASE_URL, TOKEN_URL
from integrations.twitch.predictions import (
    MAX_DURATION_S,
    MIN_DURATION_S,
    PredictionClient,
    clamp_duration,
    clamp_outcome,
    clamp_title,
)
from integrations.twitch.tokens import MemoryTokenStore

PREDICTIONS_URL = f"{HELIX_BASE_URL}/predictions"

CREATED = {
    "data": [
        {
            "id": "pred-1",
            "status": "ACTIVE",
            "outcomes": [{"id": "out-win", "title": "Win"}, {"id": "out-lose", "title": "Lose"}],
        }
    ]
}


@pytest.fixture
def credentials(oauth_config, transport, clock, make_token):
    store = MemoryTokenStore(make_token())
    manager = CredentialManager(oauth_config, store, transport=transport, clock=clock)
    manager._token = store.load()
    return manager


@pytest.fixture
def client(credentials):
    return PredictionClient(credentials)


def _body(call):
    return json.loads(call[3].decode("utf-8"))


class TestClamping:
    def test_title(self):
        assert clamp_title("x" * 60) == "x" * 45
        assert clamp_title("short") == "short"

    def test_outcome(self):
        assert clamp_outcome("y" * 30) == "y" * 25

    @pytest.mark.parametrize(
        "requested, expected",
        [(5, MIN_DURATION_S), (30, 30), (120, 120), (1800, 1800), (99999, MAX_DURATION_S)],
    )
    def test_duration(self, requested, expected):
        assert clamp_duration(requested) == expected


class TestCreatePrediction:
    def test_request_body(self, client, transport, respond):
        transport.on("POST", PREDICTIONS_URL, respond(200, CREATED))

        info = client.create_prediction("T" * 50, ["W" * 30, "Lose"], duration_seconds=10)

        body = _body(transport.calls_to("POST", PREDICTIONS_URL)[0])
        assert body == {
            "broadcaster_id": "1234",
            "title": "T" * 45,
            "outcomes": [{"title": "W" * 25}, {"title": "Lose"}],
            "prediction_window": 30,
        }
        assert info.prediction_id == "pred-1"
        assert info.outcome_ids == ["out-win", "out-lose"]
        assert info.status == "ACTIVE"

    @pytest.mark.parametrize("count", [1, 11])
    def test_outcome_count_enforced(self, client, transport, count):
        with pytest.raises(ValueError):
            client.create_prediction("Title", [f"o{i}" for i in range(count)])
        assert transport.calls == []

    def test_rejected(self, client, transport, respond):
        transport.on("POST", PREDICTIONS_URL, respond(400, {"message": "prediction already active"}))

        with pytest.raises(PredictionError) as info:
            client.create_prediction("Title", ["Win", "Lose"])
        assert info.value.status == 400

    def test_malformed_response(self, client, transport, respond):
        transport.on("POST", PREDICTIONS_URL, respond(200, {"data": []}))

        with pytest.raises(PredictionError):
            client.create_prediction("Title", ["Win", "Lose"])

    def test_retried_after_401(self, client, transport, respond):
        transport.on("POST", PREDICTIONS_URL, [HttpResponse(401), respond(200, CREATED)])
        transport.on("POST", TOKEN_URL, respond(200, {"access_token": "a2", "refresh_token": "r2", "expires_in": 60}))

        assert client.create_prediction("Title", ["Win", "Lose"]).prediction_id == "pred-1"
        assert len(transport.calls_to("POST", PREDICTIONS_URL)) == 2

    def test_no_broadcaster_id(self, oauth_config, transport, clock, make_token):
        manager = CredentialManager(oauth_config, MemoryTokenStore(), transport=transport, clock=clock)
        manager._token = make_token(user_id="")

        with pytest.raises(PredictionError, match="Broadcaster id"):
            PredictionClient(manager).create_prediction("Title", ["Win", "Lose"])

    def test_unauthenticated(self, oauth_config, transport, clock):
        manager = CredentialManager(oauth_config, MemoryTokenStore(), transport=transport, clock=clock)
        with pytest.raises(PredictionError):
            PredictionClient(manager).create_prediction("Title", ["Win", "Lose"])


class TestStatusChanges:
    @pytest.mark.parametrize(
        "action, status",
        [("lock_prediction", "LOCKED"), ("cancel_prediction", "CANCELED")],
    )
    def test_patch_status(self, client, transport, action, status):
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))

        getattr(client, action)("pred-1")

        assert _body(transport.calls[0]) == {"broadcaster_id": "1234", "id": "pred-1", "status": status}

    def test_resolve_sends_winning_outcome(self, client, transport):
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(200, b"{}"))

        client.resolve_prediction("pred-1", "out-lose")

        body = _body(transport.calls[0])
        assert body["status"] == "RESOLVED"
        assert body["winning_outcome_id"] == "out-lose"

    def test_patch_failure(self, client, transport):
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(404, b"not found"))

        with pytest.raises(PredictionError) as info:
            client.resolve_prediction("pred-1", "out-win")
        assert info.value.status == 404

    def test_persistent_401(self, client, transport, respond):
        transport.on("PATCH", PREDICTIONS_URL, HttpResponse(401))
        transport.on("POST", TOKEN_URL, respond(200, {"access_token": "a2", "expires_in": 60}))

        with pytest.raises(AuthenticationRequiredError):
            client.cancel_prediction("pred-1")


class TestGetPrediction:
    def test_query(self, client, transport, respond):
        transport.on("GET", PREDICTIONS_URL, respond(200, CREATED))

        info = client.get_prediction("pred-1")

        assert transport.calls[0][1] == f"{PREDICTIONS_URL}?broadcaster_id=1234&id=pred-1"
        assert info.outcome_ids == ["out-win", "out-lose"]
