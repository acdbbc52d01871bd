"""Timing policies and environment-backed configuration."""

from __future__ import annotations

import pytest

from splengine.config import SSH_TIMING, TCP_TIMING, EngineConfig, TimingPolicy


def test_transport_defaults() -> None:
    assert TCP_TIMING == TimingPolicy(0.05, 5)
    assert SSH_TIMING == TimingPolicy(0.05, 3)
    assert TCP_TIMING.max_latency == pytest.approx(0.25)


@pytest.mark.parametrize("kwargs", [{"idle_timeout": 0.1, "debounce_count": 0}, {"idle_timeout": 0}])
def test_timing_policy_validation(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        TimingPolicy(**kwargs)


def test_load_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SSH_HOST", "box.example.org")
    monkeypatch.setenv("SSH_USER", "ops")
    monkeypatch.setenv("SSH_PORT", "2222")
    monkeypatch.setenv("SSH_VERIFY_HOST_KEY", "no")
    monkeypatch.setenv("SPLENGINE_IDLE_TIMEOUT", "0.2")
    monkeypatch.setenv("SPLENGINE_DEBOUNCE", "0")
    monkeypatch.setenv("SPLENGINE_TRANSCRIPT", "/tmp/t.jsonl")
    monkeypatch.setenv("SPLENGINE_VERBOSE", "1")

    cfg = EngineConfig()
    cfg.load_from_env()

    assert cfg.SSH_HOST == "box.example.org"
    assert cfg.SSH_USER == "ops"
    assert cfg.SSH_PORT == 2222
    assert cfg.SSH_VERIFY_HOST_KEY is False
    assert cfg.IDLE_TIMEOUT == pytest.approx(0.2)
    assert cfg.DEBOUNCE_COUNT == 1
    assert cfg.TRANSCRIPT_PATH == "/tmp/t.jsonl"
    assert cfg.VERBOSE is True


def test_timing_for_without_overrides_keeps_default() -> None:
    assert EngineConfig().timing_for(SSH_TIMING) is SSH_TIMING


def test_timing_for_applies_partial_override() -> None:
    cfg = EngineConfig()
    cfg.DEBOUNCE_COUNT = 8
    assert cfg.timing_for(TCP_TIMING) == TimingPolicy(0.05, 8)
