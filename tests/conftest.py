"""
Test configuration and shared fixtures for ArtVault test suite.

Every test gets its own database and key file under tmp_path, and a
fake file server in place of the real one.
"""

from typing import Dict, Generator

import pytest
from fastapi.testclient import TestClient

from artvault.api import create_app
from artvault.config import Settings
from artvault.dedup import DuplicateDetector
from artvault.ingest import IngestionOrchestrator
from artvault.poller import UploadJobPoller
from artvault.storage import CatalogRepository
from tests.mocks import (
    TEST_API_KEY,
    FakeRemoteStorage,
    encode_image,
    noise_image,
    tweak_pixel,
)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Test-specific settings with isolated storage and no poll delay."""
    return Settings(
        database_path=tmp_path / "artwork.db",
        api_key_file=tmp_path / "apikey.txt",
        api_keys=[TEST_API_KEY],
        file_server_base_url="http://files.test",
        file_server_app_id="test-app",
        file_server_space_id="test-space",
        poll_interval_seconds=0,
        log_level="DEBUG",
    )


@pytest.fixture
def repository(test_settings: Settings) -> CatalogRepository:
    return CatalogRepository(test_settings)


@pytest.fixture
def fake_remote() -> FakeRemoteStorage:
    return FakeRemoteStorage()


@pytest.fixture
def orchestrator(
    test_settings: Settings,
    repository: CatalogRepository,
    fake_remote: FakeRemoteStorage,
) -> IngestionOrchestrator:
    """Orchestrator wired to the real catalog and the fake file server."""
    poller = UploadJobPoller(
        fake_remote,
        repository,
        max_retries=test_settings.poll_max_retries,
        interval=test_settings.poll_interval_seconds,
    )
    return IngestionOrchestrator(
        test_settings,
        repository,
        DuplicateDetector(repository),
        fake_remote,
        poller,
    )


@pytest.fixture
def api_client(
    test_settings: Settings, fake_remote: FakeRemoteStorage
) -> Generator[TestClient, None, None]:
    """FastAPI test client with test configuration."""
    app = create_app(test_settings, remote=fake_remote)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def sample_images() -> Dict[str, bytes]:
    """
    Encoded images for duplicate scenarios.

    - original: reference image
    - tweaked: original with one pixel changed (near duplicate)
    - different: unrelated image
    """
    original = noise_image(seed=1)
    return {
        "original": encode_image(original),
        "tweaked": encode_image(tweak_pixel(original)),
        "different": encode_image(noise_image(seed=2)),
    }
