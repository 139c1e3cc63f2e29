"""Tests for the state reset script."""

import importlib.util
from pathlib import Path

import pytest

from fleetdispatch.config import Settings

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "reset_state.py"


def load_reset_script():
    spec = importlib.util.spec_from_file_location("reset_state", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def never_called(*args, **kwargs):
    raise AssertionError("should not be reached")


@pytest.mark.asyncio
async def test_reset_refuses_memory_backend(monkeypatch, capsys) -> None:
    """Test that the in-memory backend is refused before any prompt."""
    reset_state = load_reset_script()
    monkeypatch.setattr(
        reset_state,
        "get_settings",
        lambda: Settings(_env_file=None, state_backend="memory"),
    )
    monkeypatch.setattr("builtins.input", never_called)
    monkeypatch.setattr(reset_state, "create_state_manager", never_called)

    assert await reset_state.reset_all_state() is False
    assert "restart it to start empty" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_reset_redis_needs_confirmation(monkeypatch) -> None:
    """Test that declining the prompt leaves the Redis store alone."""
    reset_state = load_reset_script()
    monkeypatch.setattr(
        reset_state,
        "get_settings",
        lambda: Settings(_env_file=None, state_backend="redis"),
    )
    monkeypatch.setattr("builtins.input", lambda prompt: "no")
    monkeypatch.setattr(reset_state, "create_state_manager", never_called)

    assert await reset_state.reset_all_state() is False
