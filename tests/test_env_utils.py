from __future__ import annotations

from flexmetrics.utils.env import env_level, env_str


def test_env_str(monkeypatch):
    monkeypatch.setenv("X_STR", "value")
    assert env_str("X_STR", "dflt") == "value"
    monkeypatch.setenv("X_STR", "")
    assert env_str("X_STR", "dflt") == "dflt"
    monkeypatch.delenv("X_STR", raising=False)
    assert env_str("X_STR", "dflt") == "dflt"


def test_env_str_snapshot_ignores_process_env(monkeypatch):
    monkeypatch.setenv("X_STR", "from-process")
    assert env_str("X_STR", "dflt", environ={}) == "dflt"
    assert env_str("X_STR", "dflt", environ={"X_STR": "snap"}) == "snap"


def test_env_level(monkeypatch):
    monkeypatch.setenv("X_LEVEL", "debug")
    assert env_level("X_LEVEL") == "DEBUG"
    monkeypatch.setenv("X_LEVEL", "chatty")
    assert env_level("X_LEVEL") == "INFO"
    monkeypatch.delenv("X_LEVEL", raising=False)
    assert env_level("X_LEVEL", "warning") == "WARNING"
