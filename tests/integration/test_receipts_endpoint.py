"""Integration tests for receipt extraction."""

from __future__ import annotations

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from heybills.config import get_settings
from heybills.rag.embeddings import HashingEmbedder
from heybills.server.app import create_app
from heybills.server.deps import build_services
from tests.helpers import CountingFactory, ScriptedGenerator, count_receipts
from tests.integration.utils import auth_headers, upload


def _failing(message: str):
    def _build():
        raise RuntimeError(message)

    return _build


@pytest.fixture()
def broken_ocr_client():
    def _make(message: str) -> TestClient:
        services = build_services(
            get_settings(),
            engine_factory=CountingFactory(_failing(message)),
            generator=ScriptedGenerator(),
            embedder=HashingEmbedder(64),
        )
        built.append(services)
        return TestClient(create_app(services))

    built = []
    yield _make
    for services in built:
        services.close()


def test_extract_stores_receipt_for_user(client, receipt_png):
    response = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers())

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["duplicate"] is False
    assert body["receipt_id"] is not None
    result = body["result"]
    assert result["status"] == "succeeded"
    assert result["fields"]["merchant"]["value"] == "Corner Coffee"
    assert result["fields"]["total"]["value"] == 8.37
    assert "4111 1111 1111 1111" not in result["raw_text"]
    assert count_receipts("alice") == 1


def test_same_image_is_reported_as_duplicate(client, receipt_png):
    first = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers())
    second = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers())
    other_user = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers("bob"))

    assert second.json()["duplicate"] is True
    assert second.json()["receipt_id"] == first.json()["receipt_id"]
    assert other_user.json()["duplicate"] is False
    assert count_receipts("alice") == 1


def test_invalid_image_returns_degraded_payload(client):
    response = client.post("/receipts/extract", files=upload(b"not an image"), headers=auth_headers())

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    body = response.json()
    assert body["code"] == "EXTRACTION_INPUT_INVALID"
    assert body["error"] == "Invalid receipt image"
    assert body["fallback"]["canManualEntry"] is True
    assert body["fallback"]["canReprocessLater"] is False
    assert "Retry-After" not in response.headers


def test_engine_failure_returns_503_with_retry_after(broken_ocr_client, receipt_png):
    client = broken_ocr_client("tesseract crashed during startup")

    response = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers())

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    body = response.json()
    assert body["code"] == "OCR_INIT_FAILED"
    assert body["error"] == "OCR service unavailable"
    assert body["retryAfter"] == 300
    assert response.headers["Retry-After"] == "300"
    assert body["fallback"]["canReprocessLater"] is True
    assert "reprocess when service available" in body["fallback"]["supportedActions"]


def test_incompatible_engine_recommends_manual_entry(broken_ocr_client, receipt_png):
    client = broken_ocr_client("SetVariable: unable to set tessedit_pageseg_mode")

    response = client.post("/receipts/extract", files=upload(receipt_png), headers=auth_headers())

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    body = response.json()
    assert body["code"] == "OCR_SYSTEM_INCOMPATIBLE"
    assert body["fallback"]["supportedActions"] == ["manual entry"]
    assert response.headers["Retry-After"] == "1800"


def test_empty_upload_is_rejected(client):
    response = client.post("/receipts/extract", files=upload(b""), headers=auth_headers())
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_upload_requires_user(client, receipt_png):
    response = client.post("/receipts/extract", files=upload(receipt_png))
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
