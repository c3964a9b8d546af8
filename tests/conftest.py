from __future__ import annotations

import sys
from io import BytesIO
from pathlib import Path

import pytest
from werkzeug.datastructures import FileStorage

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app
from app.booking import artifacts, notifications
from app.booking.policy import Actor
from app.core.config import Config
from app.core.extensions import db
from app.core.models import User, seed_demo_data


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    NOTIFIER_BACKEND = "outbox"
    PENDING_RESERVATION_TTL_HOURS = None


@pytest.fixture
def proof_dir(tmp_path):
    return tmp_path / "proofs"


@pytest.fixture
def app(proof_dir):
    app = create_app(TestConfig)
    app.extensions[artifacts.EXTENSION_KEY] = artifacts.LocalArtifactStore(proof_dir)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    return app.extensions[notifications.EXTENSION_KEY]


def _actor(email: str) -> Actor:
    return Actor.from_user(User.query.filter_by(email=email).one())


@pytest.fixture
def client_actor(app):
    return _actor("client@memorial.local")


@pytest.fixture
def second_client_actor(app):
    return _actor("client2@memorial.local")


@pytest.fixture
def staff_actor(app):
    return _actor("staff@memorial.local")


@pytest.fixture
def admin_actor(app):
    return _actor("admin@memorial.local")


@pytest.fixture
def proof_file():
    def _make(filename: str = "proof.png", data: bytes = b"\x89PNG gcash receipt"):
        return FileStorage(stream=BytesIO(data), filename=filename, content_type="image/png")

    return _make


@pytest.fixture
def client_payload():
    return {
        "client_name": "Maria Santos",
        "client_contact": "09171234567",
        "client_email": "client@memorial.local",
        "deceased_name": "Lourdes Santos",
        "deceased_birth_date": "1941-03-12",
        "deceased_death_date": "2026-09-30",
        "deceased_relationship": "mother",
        "payment_method": "gcash",
        "payment_amount": "500",
    }


@pytest.fixture
def staff_payload():
    return {
        "client_name": "Walk-in Family Cruz",
        "client_contact": "cruz.family@example.com",
        "deceased_name": "Ramon Cruz",
        "payment_method": "cash",
        "payment_amount": "0",
        "staff_notes": "Paid at the counter",
    }


@pytest.fixture
def stored_proofs(proof_dir):
    def _list() -> list[Path]:
        if not proof_dir.exists():
            return []
        return [path for path in proof_dir.rglob("*") if path.is_file()]

    return _list


@pytest.fixture
def login(client):
    def _login(email: str, password: str):
        return client.post("/auth/login", json={"email": email, "password": password})

    return _login


@pytest.fixture
def login_admin(login):
    return lambda: login("admin@memorial.local", "admin123")


@pytest.fixture
def login_staff(login):
    return lambda: login("staff@memorial.local", "staff123")


@pytest.fixture
def login_client(login):
    return lambda: login("client@memorial.local", "client123")


@pytest.fixture
def login_second_client(login):
    return lambda: login("client2@memorial.local", "client123")
