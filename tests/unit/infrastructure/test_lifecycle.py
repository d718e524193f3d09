"""Tests for engine wiring, startup and shutdown."""

from pathlib import Path

import httpx
import pytest
from pytest_httpx import HTTPXMock

from soulbeet.config.settings import DatabaseSettings, Settings, SlskdSettings
from soulbeet.domain.entities import JobState
from soulbeet.domain.exceptions import ConfigurationError
from soulbeet.domain.value_objects import TransferSpec
from soulbeet.infrastructure.lifecycle import build_engine, lifespan

APPLICATION_URL = "http://slskd:5030/api/v0/application"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        slskd=SlskdSettings(url="http://slskd:5030", download_path=tmp_path / "downloads"),
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path}/data/jobs.db"),
    )


def test_build_engine_shares_one_store(settings: Settings) -> None:
    engine = build_engine(settings)

    assert engine.worker._store is engine.store
    assert engine.processor._store is engine.store
    assert engine.worker_task is None


def test_worker_shutdown_outlasts_a_running_import(settings: Settings) -> None:
    engine = build_engine(settings)

    assert engine.worker._folder_locks is engine.processor._folder_locks
    assert engine.worker._import_grace > settings.beets.import_timeout


async def test_lifespan_creates_store_and_survives_slskd_down(
    settings: Settings, tmp_path: Path, httpx_mock: HTTPXMock
) -> None:
    httpx_mock.add_exception(httpx.ConnectError("refused"), url=APPLICATION_URL)

    async with lifespan(settings, run_worker=False) as engine:
        job = await engine.service.submit(
            [TransferSpec("peer", "@@music\\A\\01.flac", 10)], tmp_path / "library"
        )
        stored = await engine.store.get(job.id)

    assert (tmp_path / "data" / "jobs.db").exists()
    assert stored.state == JobState.CREATED


async def test_lifespan_starts_and_stops_worker(
    settings: Settings, httpx_mock: HTTPXMock
) -> None:
    httpx_mock.add_response(url=APPLICATION_URL, json={"version": "0.21.0"})

    async with lifespan(settings) as engine:
        assert engine.worker_task is not None
        task = engine.worker_task

    assert task.done()
    assert engine.worker._running is False


async def test_unwritable_database_directory_fails_fast(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file")
    settings = Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{blocker}/jobs.db"),
    )

    with pytest.raises(ConfigurationError):
        async with lifespan(settings, run_worker=False):
            pass
