"""Unit tests for the blocking bridge into asyncio."""

from __future__ import annotations

import asyncio
import threading

import pytest

from pgtestdb.bridge import run_sync

pytestmark = pytest.mark.unit


async def _double_with_thread_name(value: int) -> tuple[str, int]:
    await asyncio.sleep(0)
    return threading.current_thread().name, value * 2


async def _boom() -> None:
    raise LookupError("missing")


def test_run_sync_returns_result_without_running_loop() -> None:
    thread_name, result = run_sync(_double_with_thread_name, 21)

    assert result == 42
    assert thread_name == threading.current_thread().name


def test_run_sync_reraises_coroutine_error() -> None:
    with pytest.raises(LookupError, match="missing"):
        run_sync(_boom)


def test_run_sync_passes_keyword_arguments() -> None:
    async def _echo(*, value: str) -> str:
        return value

    assert run_sync(_echo, value="ok") == "ok"


async def test_run_sync_inside_running_loop_uses_worker_thread() -> None:
    outer_loop = asyncio.get_running_loop()

    async def _inner() -> tuple[str, bool]:
        return threading.current_thread().name, asyncio.get_running_loop() is outer_loop

    thread_name, same_loop = run_sync(_inner, thread_name="bridge-under-test")

    assert thread_name == "bridge-under-test"
    assert same_loop is False


async def test_run_sync_inside_running_loop_reraises_error() -> None:
    with pytest.raises(LookupError, match="missing"):
        run_sync(_boom)
