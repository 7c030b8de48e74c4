from __future__ import annotations

import dataclasses
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import fakeredis
import pytest
from fakes import FUSION_BASE, POOL_BASE, QUESTIONS_URL, FakeServices

from contestant.config import Settings, settings_from_env


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs (PyCharm/CLI).

    Makes REDIS_URL / FUSION_* overrides available to tests without exporting them by hand.
    In CI we don't auto-load `.env` unless CONTESTANT_LOAD_DOTENV_FOR_TESTS=1.
    """

    if os.environ.get("CI") and os.environ.get("CONTESTANT_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


@pytest.fixture()
def r() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def settings() -> Settings:
    """Hermetic settings: fake service URLs and the broker switched off."""

    base = settings_from_env()
    return dataclasses.replace(
        base,
        broker=dataclasses.replace(base.broker, enabled=False),
        fusion=dataclasses.replace(base.fusion, base_url=FUSION_BASE, token="test-token", space_id="spc1", event_node_id="fod1"),
        pool_base_url=POOL_BASE,
        questions_url=QUESTIONS_URL,
    )


@pytest.fixture()
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture()
def client_and_redis(
    settings: Settings, services: FakeServices
) -> Generator[tuple[Any, fakeredis.FakeRedis, FakeServices], None, None]:
    """FastAPI TestClient over a station client backed by fakeredis and fake HTTP services."""

    from fastapi.testclient import TestClient

    from contestant.client import ContestantClient
    from contestant.main import app

    r = fakeredis.FakeRedis(decode_responses=True)
    station = ContestantClient(
        settings=settings,
        r=r,
        tab_id="tab-test",
        fusion=services.fusion(settings),
        pool=services.pool(settings),
        question_bank=services.question_bank(settings),
    )
    app.state.client = station
    with TestClient(app) as c:
        yield c, r, services
    app.state.client = None
