import random
from datetime import datetime, timezone
from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from universum.config import AppSettings, ArtifactConfig, GenerationEndpointConfig, PacingConfig
from universum.controller import TurnContext, TurnController
from universum.events import EventBus
from universum.locales import Translator
from universum.main import create_app
from universum.tools import UiBridge, WeatherService, YouTubeSearch
from universum.workspace import Workspace
from tests.fakes import FakeEncoder, FakeGenerationService


FIXED_NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        generation=GenerationEndpointConfig(base_url="http://gen.test/v1beta", api_key="test-key"),
        pacing=PacingConfig(scale=0),
        artifacts=ArtifactConfig(
            presentation_image_delay_s=0,
            video_poll_interval_s=0,
            tool_latency_s=0,
            spreadsheet_delay_s=0,
        ),
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        persist_debounce_ms=0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def turn_factory(tmp_path: Path):
    """Builds a controller over a fresh in-memory workspace, no HTTP layer."""

    def _factory(*, generation: FakeGenerationService = None, encoder: FakeEncoder = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        bus = EventBus()
        t = Translator(settings.locale)
        workspace = Workspace(bus, t, settings.recent_attachment_limit)
        ctx = TurnContext(
            settings=settings,
            generation=generation or FakeGenerationService(),
            t=t,
            workspace=workspace,
            bus=bus,
            ui=UiBridge(bus),
            encoder=encoder or FakeEncoder(),
            weather=WeatherService(rng=random.Random(7)),
            youtube=YouTubeSearch(0),
            clock=lambda: FIXED_NOW,
            rng=random.Random(7),
        )
        return TurnController(ctx)

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        generation: FakeGenerationService = None,
        encoder: FakeEncoder = None,
        config_path: Path = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_generation = generation or FakeGenerationService()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            generation=fake_generation,
            encoder=encoder or FakeEncoder(),
            config_path=cfg_path,
        )
        return app, cfg_path, fake_generation

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, generation = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_generation = generation  # type: ignore[attr-defined]
            yield http_client
