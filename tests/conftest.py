from pathlib import Path

import pytest

from fakes import (
    FakeAssetStore,
    FakeContentGenerator,
    FakePricingClient,
    FakePublisher,
    FakeQualityScorer,
    FakeRenderer,
)
from mailflow.config import MailflowConfig
from mailflow.services.base import CampaignServices


@pytest.fixture
def fake_services() -> CampaignServices:
    return CampaignServices(
        content=FakeContentGenerator(),
        pricing=FakePricingClient(),
        assets=FakeAssetStore(),
        renderer=FakeRenderer(),
        quality=FakeQualityScorer(),
        publisher=FakePublisher(),
    )


@pytest.fixture
def fast_config() -> MailflowConfig:
    config = MailflowConfig.default()
    config.retry.backoff_base_ms = 0
    config.retry.stage_timeout_seconds = 5.0
    return config


@pytest.fixture
def assets_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "figma-assets"
    directory.mkdir()
    for name in ("sochi-beach.png", "winter-mountains.jpg", "city_night.svg", "notes.txt"):
        (directory / name).write_bytes(b"fake")
    (directory / "tags.json").write_text(
        '{"sochi-beach.png": {"tags": ["sochi", "sea", "summer"], "tone": "joyful"},'
        ' "winter-mountains.jpg": {"tags": ["winter", "mountains"], "tone": "calm"}}',
        encoding="utf-8",
    )
    return directory
