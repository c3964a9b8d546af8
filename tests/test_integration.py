from __future__ import annotations

from io import BytesIO

import pytest
from flask import Flask

from app import create_app
from app.booking import notifications
from app.booking.query import get_resource_status
from app.core.config import Config, DevelopmentConfig, ProductionConfig, config_from_env
from app.core.extensions import db
from app.core.models import ResourceStatus, User


def _client_form(**overrides):
    form = {
        "resource": "garden:A-3-7",
        "client_contact": "09171234567",
        "deceased_name": "Lourdes Santos",
        "deceased_death_date": "2026-09-30",
        "payment_method": "gcash",
        "payment_amount": "500",
        "proof": (BytesIO(b"\x89PNG receipt"), "gcash.png"),
    }
    form.update(overrides)
    return form


def _create_online(client, **overrides):
    return client.post("/api/reservations", data=_client_form(**overrides), content_type="multipart/form-data")


def test_health_endpoint(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_login_rejects_bad_password(client, login):
    response = login("client@memorial.local", "wrong")
    assert response.status_code == 401
    assert response.get_json()["error"] == "invalid_credentials"


def test_login_rejects_inactive_user(app, client, login):
    user = User.query.filter_by(email="client2@memorial.local").one()
    user.is_active = False
    db.session.commit()

    assert login("client2@memorial.local", "client123").status_code == 401


def test_reservations_require_login(client):
    response = client.post("/api/reservations", json={"resource": "garden:A-3-7"})
    assert response.status_code == 401
    assert response.get_json() == {"ok": False, "error": "unauthorized"}


def test_resource_listing_is_public(client):
    response = client.get("/api/resources?garden=A&status=occupied")
    assert response.status_code == 200
    data = response.get_json()
    assert data["total"] == 2
    assert {row["code"] for row in data["resources"]} == {"A-1-1", "A-1-2"}


def test_resource_detail_and_errors(client):
    assert client.get("/api/resources/columbarium:M2A0305").get_json()["resource"]["slot_type"] == "family"
    assert client.get("/api/resources/garden:A-40-1").status_code == 404
    assert client.get("/api/resources/crypt:A-1-1").status_code == 400


def test_client_books_online_and_gets_confirmation(app, client, login_client, outbox):
    login_client()

    response = _create_online(client)

    assert response.status_code == 201
    reservation = response.get_json()["reservation"]
    assert reservation["status"] == "pending"
    assert reservation["client"]["email"] == "client@memorial.local"
    assert reservation["payment"]["has_proof"] is True
    assert reservation["confirmation_sent_at"] is not None
    assert outbox.messages[0].recipient == "client@memorial.local"
    assert client.get("/api/resources/garden:A-3-7").get_json()["resource"]["status"] == "reserved"

    proof = client.get(f"/api/reservations/{reservation['id']}/proof")
    assert proof.status_code == 200
    assert proof.data == b"\x89PNG receipt"


def test_second_booking_of_same_grave_conflicts(client, login_client, login_second_client):
    login_client()
    assert _create_online(client).status_code == 201

    login_second_client()
    response = _create_online(client)

    assert response.status_code == 409
    body = response.get_json()
    assert body["error"] == "conflict"
    assert body["retryable"] is False


def test_client_validation_errors(client, login_client):
    login_client()

    assert _create_online(client, payment_amount="100").status_code == 400
    missing_proof = _client_form()
    missing_proof.pop("proof")
    response = client.post("/api/reservations", data=missing_proof, content_type="multipart/form-data")
    assert response.status_code == 400
    assert client.post("/api/reservations", json={"payment_method": "gcash"}).status_code == 400
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE


def test_delivery_failure_returns_502_and_compensates(client, login_client, outbox):
    outbox.fail = True
    login_client()

    response = _create_online(client)

    assert response.status_code == 502
    body = response.get_json()
    assert body["error"] == "delivery_failure"
    assert body["retryable"] is True
    assert body["compensated"] is True
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE


def test_deferred_booking_then_proof_upload(client, login_client, outbox):
    login_client()
    response = client.post(
        "/api/reservations",
        json={
            "resource": "columbarium:M2A0305",
            "client_contact": "09171234567",
            "payment_method": "bank_transfer",
            "payment_amount": "14850",
            "defer_proof": True,
        },
    )
    assert response.status_code == 201
    reservation = response.get_json()["reservation"]
    assert reservation["source"] == "chatbot"
    assert reservation["payment"]["has_proof"] is False

    upload = client.post(
        f"/api/reservations/{reservation['id']}/proof",
        data={"proof": (BytesIO(b"%PDF-1.7 deposit slip"), "deposit.pdf")},
        content_type="multipart/form-data",
    )

    assert upload.status_code == 200
    assert upload.get_json()["reservation"]["payment"]["has_proof"] is True
    assert len(outbox.messages) == 1


def test_clients_only_see_their_own_reservations(client, login_client, login_second_client):
    login_client()
    reservation_id = _create_online(client).get_json()["reservation"]["id"]

    login_second_client()
    assert client.get(f"/api/reservations/{reservation_id}").status_code == 404
    assert client.get(f"/api/reservations/{reservation_id}/proof").status_code == 404
    assert client.get("/api/reservations").get_json()["total"] == 0
    response = client.patch(f"/api/reservations/{reservation_id}/status", json={"status": "cancelled"})
    assert response.status_code == 404

    login_client()
    listing = client.get("/api/reservations").get_json()
    assert [row["id"] for row in listing["rows"]] == [reservation_id]


def test_staff_reviews_and_admin_deletes(client, login_client, login_staff, login_admin):
    login_client()
    reservation_id = _create_online(client).get_json()["reservation"]["id"]

    login_staff()
    response = client.patch(f"/api/reservations/{reservation_id}/status", json={"status": "approved"})
    assert response.status_code == 200
    assert response.get_json()["reservation"]["status"] == "approved"
    assert client.get("/api/reservations?status=approved&catalog=garden_grid").get_json()["total"] == 1
    assert client.delete(f"/api/reservations/{reservation_id}").status_code == 403

    login_admin()
    response = client.delete(f"/api/reservations/{reservation_id}")
    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "deleted": reservation_id}
    assert client.get(f"/api/reservations/{reservation_id}").status_code == 404
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE


def test_invalid_transition_returns_400(client, login_staff):
    login_staff()
    created = client.post(
        "/api/reservations",
        json={
            "resource": "lot:A-15-23",
            "client_name": "Walk-in",
            "client_contact": "0917",
            "payment_method": "cash",
            "payment_amount": "0",
        },
    )
    assert created.status_code == 201
    reservation = created.get_json()["reservation"]
    assert reservation["status"] == "approved"

    response = client.patch(f"/api/reservations/{reservation['id']}/status", json={"status": "pending"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation"


def test_statistics_are_staff_only(client, login_client, login_staff):
    login_client()
    assert client.get("/api/reservations/statistics").status_code == 403

    login_staff()
    response = client.get("/api/reservations/statistics")
    assert response.status_code == 200
    assert response.get_json()["total"] == 0


def test_admin_changes_resource_status(client, login_staff, login_admin):
    login_staff()
    assert client.post("/api/resources/garden:A-3-7/status", json={"status": "maintenance"}).status_code == 403

    login_admin()
    response = client.post("/api/resources/garden:A-3-7/status", json={"status": "maintenance"})
    assert response.status_code == 200
    assert response.get_json()["resource"]["status"] == "maintenance"


def test_columbarium_endpoints(client):
    layout = client.get("/api/columbarium/layout?floor=1&section=B").get_json()
    assert len(layout["floors"]) == 1
    assert layout["status_counts"] == {"available": 15}

    quote = client.get("/api/columbarium/M2A0305/quote?lease_years=30&features=glass").get_json()["quote"]
    assert quote["total"] == "145825.00"
    assert client.get("/api/columbarium/M2A0305/quote?features=jacuzzi").status_code == 400
    assert len(client.get("/api/gardens").get_json()["gardens"]) == 4


def test_cli_commands(app):
    runner = app.test_cli_runner()

    assert "Seed skipped" in runner.invoke(args=["seed-demo"]).output
    assert "Reset blocked" in runner.invoke(args=["seed-demo", "--reset"]).output
    assert "Expiry disabled" in runner.invoke(args=["reservations-expire-pending"]).output
    audit = runner.invoke(args=["claims-audit"])
    assert audit.exit_code == 0
    assert "Claims audit passed" in audit.output


@pytest.mark.parametrize(
    ("app_env", "expected"),
    [(None, Config), ("production", ProductionConfig), ("Prod", ProductionConfig), ("development", DevelopmentConfig)],
)
def test_config_is_selected_from_app_env(monkeypatch, app_env, expected):
    if app_env is None:
        monkeypatch.delenv("APP_ENV", raising=False)
    else:
        monkeypatch.setenv("APP_ENV", app_env)

    assert config_from_env() is expected


def test_unknown_app_env_fails_fast(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")

    with pytest.raises(ValueError, match="Unknown APP_ENV"):
        config_from_env()


def test_production_config_delivers_through_smtp(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_from_env())

    notifications.init_notifier(flask_app)

    assert flask_app.config["NOTIFIER_BACKEND"] == "smtp"
    assert isinstance(flask_app.extensions[notifications.EXTENSION_KEY], notifications.SmtpNotifier)


def test_create_app_uses_app_env_when_no_config_is_given(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")

    dev_app = create_app()

    assert dev_app.debug is True
    assert dev_app.config["APP_ENV"] == "development"
    assert isinstance(dev_app.extensions[notifications.EXTENSION_KEY], notifications.OutboxNotifier)
