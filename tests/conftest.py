"""Shared pytest fixtures for the Hey Bills test suite."""

from __future__ import annotations

from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from heybills.config import get_settings
from heybills.db.repository import reset_repository_state
from heybills.rag.embeddings import HashingEmbedder
from heybills.server.app import create_app
from heybills.server.deps import Services, build_services
from tests.helpers import CountingFactory, ScriptedGenerator, png_bytes


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Ensure each test uses an isolated SQLite database location."""

    db_path = tmp_path / "test_heybills.db"
    monkeypatch.setenv("HEYBILLS_DATABASE_PATH", str(db_path))
    monkeypatch.delenv("HEYBILLS_API_TOKEN", raising=False)
    get_settings.cache_clear()
    reset_repository_state()
    yield
    reset_repository_state()
    monkeypatch.delenv("HEYBILLS_DATABASE_PATH", raising=False)
    get_settings.cache_clear()


@pytest.fixture()
def engine_factory() -> CountingFactory:
    return CountingFactory()


@pytest.fixture()
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture()
def services(engine_factory, generator) -> Generator[Services, None, None]:
    built = build_services(
        get_settings(),
        engine_factory=engine_factory,
        generator=generator,
        embedder=HashingEmbedder(256),
    )
    yield built
    built.close()


@pytest.fixture()
def app(services) -> Generator[FastAPI, None, None]:
    """Create a new FastAPI app instance for each test and reset overrides."""

    application = create_app(services)
    yield application
    application.dependency_overrides.clear()


@pytest.fixture()
def client(app) -> TestClient:
    """Return a test client bound to the FastAPI app."""

    return TestClient(app)


@pytest.fixture()
def receipt_png() -> bytes:
    return png_bytes()
