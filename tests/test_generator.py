# tests/test_generator.py
import requests

from gamepulse.schemas import EventSchema
from publisher import generator


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}

    def json(self):
        return self._body


def test_generated_events_match_ingestion_shape():
    players = generator.make_players(5)
    batch = generator.generate_batch(players, 50)

    assert len(batch) == 50
    for event in batch:
        parsed = EventSchema.model_validate(event)
        assert parsed.event_type in generator.EVENT_WEIGHTS
        assert parsed.payload["platform"] in generator.PLATFORMS


def test_game_ended_payload_has_score():
    payload = generator.make_payload("game_ended", "ios")
    assert payload["score"] >= 0
    assert payload["duration_seconds"] > 0


def test_send_batch_returns_acknowledged_count(monkeypatch):
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append((url, json))
        return FakeResponse(200, {"accepted": True, "count": len(json)})

    monkeypatch.setattr(generator.requests, "post", fake_post)
    batch = generator.generate_batch(generator.make_players(2), 3)

    assert generator.send_batch(batch, url="http://test/events") == 3
    assert sent[0][0] == "http://test/events"


def test_send_batch_survives_network_errors(monkeypatch):
    def fake_post(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(generator.requests, "post", fake_post)
    assert generator.send_batch([{"event_type": "app_launched"}]) is None
