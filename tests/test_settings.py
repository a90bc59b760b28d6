from __future__ import annotations

from config.settings import Settings


def test_every_setting_is_a_relay_or_client_tunable():
    assert "environment" not in Settings.model_fields
    assert Settings().adaptation_cooldown_ms == 3000


def test_blank_relay_uris_are_dropped(monkeypatch):
    monkeypatch.setenv("TURN_URIS", '[" turn:relay.test:3478 ", " "]')

    assert Settings().turn_uris == ["turn:relay.test:3478"]
