"""Integration tests for the HTTP surface.

Tests the request flow end to end:
- Registration, login, password reset and logout
- Middleware identity resolution and revoked tokens
- Cross-user isolation over HTTP
- Medicines, take-dose and schedules
- Public catalog reads
- Image upload and serving
"""

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from medtracker import app as app_module


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="a@x.com", password="secret1"):
    response = client.post("/api/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _medicine_body(**overrides):
    body = {
        "name": "Ibuprofen",
        "quantity": 2,
        "expiry_date": (date.today() + timedelta(days=365)).isoformat(),
        "dosage": "200mg",
        "composition": [{"name": "ibuprofen", "strength_value": 200, "strength_unit": "mg"}],
    }
    body.update(overrides)
    return body


@pytest.fixture
def alice_token(client):
    return _register(client)["token"]


@pytest.fixture
def bob_token(client):
    return _register(client, "b@x.com", "secret2")["token"]


@pytest.fixture
def profile_id(client, alice_token):
    response = client.post("/api/profiles", json={"name": "Mom"}, headers=_auth(alice_token))
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.fixture
def medicine_id(client, alice_token, profile_id):
    response = client.post(
        f"/api/profiles/{profile_id}/medicines",
        json=_medicine_body(),
        headers=_auth(alice_token),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


class TestServiceEndpoints:
    def test_root_reports_up(self, client):
        body = client.get("/").json()
        assert body["status"] == "UP"
        assert body["service"] == "Medicine Tracker Backend"
        assert body["version"] == "1.0.0"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["checks"]["store"]["status"] == "healthy"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAuthFlow:
    def test_register_login_reset_example(self, client):
        t1 = _register(client)["token"]
        login = client.post("/api/auth/login", json={"email": "a@x.com", "password": "secret1"})
        assert login.status_code == 200
        t2 = login.json()["data"]["token"]
        assert t1 != t2
        assert client.get("/api/profiles", headers=_auth(t1)).status_code == 200
        assert client.get("/api/profiles", headers=_auth(t2)).status_code == 200

        reset = client.post(
            "/api/auth/forgot-password",
            json={"email": "a@x.com", "new_password": "secret2"},
        )
        assert reset.status_code == 200
        t3 = reset.json()["data"]["token"]

        for stale in (t1, t2):
            response = client.get("/api/profiles", headers=_auth(stale))
            assert response.status_code == 401
            assert response.json()["error"]["code"] == "unauthorized"
        assert client.get("/api/profiles", headers=_auth(t3)).status_code == 200

    def test_duplicate_registration(self, client):
        _register(client)
        response = client.post(
            "/api/auth/register", json={"email": "A@x.com", "password": "secret1"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "duplicate_email"

    def test_bad_credentials(self, client):
        _register(client)
        response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "nope123"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": "secret1"},
            {"email": "a@x.com", "password": "short"},
            {"email": "a@x.com"},
        ],
    )
    def test_register_validation(self, client, payload):
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_token_is_unauthorized(self, client):
        response = client.get("/api/profiles")
        assert response.status_code == 401

    def test_logout_revokes_token(self, client, alice_token):
        response = client.post("/api/auth/logout", headers=_auth(alice_token))
        assert response.status_code == 200

        again = client.get("/api/profiles", headers=_auth(alice_token))
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "invalid_token"

    def test_fcm_token(self, client, alice_token):
        response = client.post(
            "/api/users/fcm-token", json={"fcm_token": "device-1"}, headers=_auth(alice_token)
        )
        assert response.status_code == 200


class TestIsolation:
    def test_other_user_gets_not_found_everywhere(
        self, client, alice_token, bob_token, profile_id, medicine_id
    ):
        schedule = client.post(
            f"/api/medicines/{medicine_id}/schedules",
            json={"time_of_day": "08:00"},
            headers=_auth(alice_token),
        ).json()["data"]
        bob = _auth(bob_token)

        assert client.get(f"/api/profiles/{profile_id}", headers=bob).status_code == 404
        assert client.get(f"/api/medicines/{medicine_id}", headers=bob).status_code == 404
        assert (
            client.post(
                f"/api/profiles/{profile_id}/medicines/{medicine_id}/takedose", headers=bob
            ).status_code
            == 404
        )
        assert client.delete(f"/api/schedules/{schedule['id']}", headers=bob).status_code == 404
        assert client.get("/api/medicines", headers=bob).json()["data"] == []

    def test_create_under_foreign_profile_is_forbidden(
        self, client, bob_token, profile_id
    ):
        response = client.post(
            f"/api/profiles/{profile_id}/medicines",
            json=_medicine_body(),
            headers=_auth(bob_token),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ownership_violation"


class TestMedicinesAndSchedules:
    def test_take_dose_until_empty(self, client, alice_token, profile_id, medicine_id):
        url = f"/api/profiles/{profile_id}/medicines/{medicine_id}/takedose"
        assert client.post(url, headers=_auth(alice_token)).json()["data"]["quantity"] == 1
        assert client.post(url, headers=_auth(alice_token)).json()["data"]["quantity"] == 0

        response = client.post(url, headers=_auth(alice_token))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "invalid_operation"

    def test_medicine_list_includes_profile_name(self, client, alice_token, medicine_id):
        data = client.get("/api/medicines", headers=_auth(alice_token)).json()["data"]
        assert data[0]["id"] == medicine_id
        assert data[0]["profile_name"] == "Mom"
        assert data[0]["status"] == "ACTIVE"

    def test_past_expiry_is_rejected(self, client, alice_token, profile_id):
        response = client.post(
            f"/api/profiles/{profile_id}/medicines",
            json=_medicine_body(expiry_date="2000-01-01"),
            headers=_auth(alice_token),
        )
        assert response.status_code == 422

    def test_duplicate_schedule(self, client, alice_token, medicine_id):
        url = f"/api/medicines/{medicine_id}/schedules"
        first = client.post(url, json={"time_of_day": "08:00", "frequency": "DAILY"}, headers=_auth(alice_token))
        assert first.status_code == 201
        assert first.json()["data"]["time_of_day"] == "08:00:00"

        second = client.post(url, json={"time_of_day": "08:00:00"}, headers=_auth(alice_token))
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "duplicate_schedule"

    def test_unknown_frequency_is_rejected(self, client, alice_token, medicine_id):
        response = client.post(
            f"/api/medicines/{medicine_id}/schedules",
            json={"time_of_day": "08:00", "frequency": "HOURLY"},
            headers=_auth(alice_token),
        )
        assert response.status_code == 422

    def test_profile_delete_cascades(self, client, alice_token, profile_id, medicine_id):
        client.post(
            f"/api/medicines/{medicine_id}/schedules",
            json={"time_of_day": "08:00"},
            headers=_auth(alice_token),
        )
        response = client.delete(f"/api/profiles/{profile_id}", headers=_auth(alice_token))
        assert response.status_code == 200

        assert client.get("/api/schedules", headers=_auth(alice_token)).json()["data"] == []
        assert client.get("/api/medicines", headers=_auth(alice_token)).json()["data"] == []


class TestCatalog:
    def test_reads_are_public_writes_are_not(self, client, alice_token):
        payload = {"name": "Aspirin", "category": "analgesic"}
        assert client.post("/api/global-medicines", json=payload).status_code == 401

        created = client.post("/api/global-medicines", json=payload, headers=_auth(alice_token))
        assert created.status_code == 201
        entry_id = created.json()["data"]["id"]

        assert client.get("/api/global-medicines").json()["data"][0]["name"] == "Aspirin"
        assert client.get(f"/api/global-medicines/{entry_id}").status_code == 200
        search = client.get("/api/global-medicines/search", params={"name": "asp"})
        assert [e["id"] for e in search.json()["data"]] == [entry_id]
        category = client.get("/api/global-medicines/category/analgesic")
        assert len(category.json()["data"]) == 1
        assert client.delete(f"/api/global-medicines/{entry_id}").status_code == 401

    def test_missing_entry_is_not_found(self, client):
        response = client.get("/api/global-medicines/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestImages:
    def test_upload_serve_and_delete(self, client, alice_token):
        response = client.post(
            "/api/medicines/upload-image",
            files={"medicineImage": ("pill.png", b"\x89PNG-bytes", "image/png")},
            headers=_auth(alice_token),
        )
        assert response.status_code == 201, response.text
        url = response.json()["data"]["url"]
        path = "/media/images/" + url.rsplit("/", 1)[-1]

        served = client.get(path)
        assert served.status_code == 200
        assert served.content == b"\x89PNG-bytes"

        deleted = client.delete(
            "/api/medicines/images", params={"url": url}, headers=_auth(alice_token)
        )
        assert deleted.status_code == 200
        assert client.get(path).status_code == 404

    def test_non_image_is_rejected(self, client, alice_token):
        response = client.post(
            "/api/medicines/upload-image",
            files={"medicineImage": ("notes.txt", b"hello", "text/plain")},
            headers=_auth(alice_token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
