"""Shared helpers for integration tests."""

from __future__ import annotations

from heybills.config import get_settings


def auth_headers(user_id: str = "alice") -> dict[str, str]:
    headers = {"X-User-ID": user_id}
    token = get_settings().api_token
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def upload(payload: bytes, filename: str = "receipt.png") -> dict:
    return {"file": (filename, payload, "image/png")}
