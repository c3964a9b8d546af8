from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.booking.artifacts import get_artifact_store
from app.booking.completion import attach_proof_and_finalize, upload_proof
from app.booking.ledger import find_reservation
from app.booking.policy import Actor
from app.booking.query import get_resource_status
from app.booking.errors import DeliveryFailure
from app.booking.services import create_reservation, set_reservation_status
from app.core.models import (
    ActorRole,
    ReservationEvent,
    ReservationEventType,
    ReservationStatus,
    ResourceStatus,
)


@pytest.fixture
def failing_notifier(outbox):
    outbox.fail = True
    return outbox


@pytest.fixture
def deferred_reservation(app, client_actor, client_payload):
    return create_reservation("garden:A-3-7", client_actor, client_payload, defer_proof=True).unwrap()


def test_deferred_reservation_holds_resource_until_proof(app, deferred_reservation, outbox):
    assert deferred_reservation.status == ReservationStatus.PENDING
    assert deferred_reservation.proof_path is None
    assert deferred_reservation.confirmation_sent_at is None
    assert get_resource_status("garden:A-3-7") == ResourceStatus.RESERVED
    assert outbox.messages == []


def test_upload_proof_confirms_deferred_reservation(app, deferred_reservation, client_actor, proof_file, outbox, stored_proofs):
    outcome = upload_proof(deferred_reservation.id, proof_file(), client_actor)

    assert outcome.ok, outcome.error
    reservation = outcome.reservation
    assert reservation.proof_path
    assert reservation.confirmation_sent_at is not None
    assert get_artifact_store().path_for(reservation.proof_path).read_bytes() == b"\x89PNG gcash receipt"
    assert len(stored_proofs()) == 1
    message = outbox.messages[0]
    assert message.template == "reservation_confirmation"
    assert reservation.reference in message.subject
    assert "garden:A-3-7" in message.body
    event_types = {
        event.event_type for event in ReservationEvent.query.filter_by(reservation_id=reservation.id).all()
    }
    assert {ReservationEventType.PROOF_ATTACHED, ReservationEventType.CONFIRMATION_SENT} <= event_types


def test_delivery_failure_at_creation_compensates(
    app, client_actor, client_payload, proof_file, failing_notifier, stored_proofs
):
    outcome = create_reservation("garden:A-3-7", client_actor, client_payload, proof=proof_file())

    assert outcome.kind == "delivery_failure"
    assert outcome.compensated is True
    assert outcome.error.retryable
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE
    assert ReservationEvent.query.filter_by(event_type=ReservationEventType.COMPENSATED).count() == 1
    assert stored_proofs() == []
    assert failing_notifier.messages == []


def test_delivery_failure_on_upload_compensates(
    app, deferred_reservation, client_actor, proof_file, failing_notifier, stored_proofs
):
    reservation_id = deferred_reservation.id

    outcome = upload_proof(reservation_id, proof_file(), client_actor)

    assert outcome.kind == "delivery_failure"
    assert outcome.compensated is True
    assert find_reservation(reservation_id) is None
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE
    assert stored_proofs() == []


def test_missing_recipient_is_a_delivery_failure(app, client_actor, client_payload, proof_file):
    no_email = Actor(user_id=client_actor.user_id, role=ActorRole.CLIENT, name="Maria Santos")
    payload = {**client_payload, "client_email": ""}

    outcome = create_reservation("garden:A-3-7", no_email, payload, proof=proof_file())

    assert outcome.kind == "delivery_failure"
    assert outcome.compensated is True
    assert get_resource_status("garden:A-3-7") == ResourceStatus.AVAILABLE


def test_attach_to_missing_reservation_discards_artifact(app, stored_proofs):
    artifact_ref = get_artifact_store().store(b"%PDF orphan", "orphan.pdf")
    assert len(stored_proofs()) == 1

    outcome = attach_proof_and_finalize(424242, artifact_ref)

    assert outcome.kind == "not_found"
    assert stored_proofs() == []


def test_attach_to_staff_reservation_is_rejected(app, staff_actor, staff_payload, stored_proofs):
    reservation = create_reservation("garden:A-3-7", staff_actor, staff_payload).unwrap()
    artifact_ref = get_artifact_store().store(b"%PDF receipt", "receipt.pdf")

    outcome = attach_proof_and_finalize(reservation.id, artifact_ref)

    assert outcome.kind == "validation"
    assert stored_proofs() == []
    assert find_reservation(reservation.id).status == ReservationStatus.APPROVED


def test_upload_proof_twice_is_rejected_without_compensation(
    app, deferred_reservation, client_actor, proof_file, outbox
):
    assert upload_proof(deferred_reservation.id, proof_file(), client_actor).ok

    outcome = upload_proof(deferred_reservation.id, proof_file("again.png"), client_actor)

    assert outcome.kind == "validation"
    assert outcome.compensated is False
    assert find_reservation(deferred_reservation.id) is not None
    assert get_resource_status("garden:A-3-7") == ResourceStatus.RESERVED
    assert len(outbox.messages) == 1


@pytest.mark.parametrize(
    ("filename", "data"),
    [("proof.exe", b"MZ binary"), ("proof.png", b""), (None, b"data")],
)
def test_invalid_upload_leaves_reservation_untouched(
    app, deferred_reservation, client_actor, proof_file, stored_proofs, filename, data
):
    file_obj = None if filename is None else proof_file(filename, data)

    outcome = upload_proof(deferred_reservation.id, file_obj, client_actor)

    assert outcome.kind == "validation"
    assert stored_proofs() == []
    assert find_reservation(deferred_reservation.id).status == ReservationStatus.PENDING
    assert get_resource_status("garden:A-3-7") == ResourceStatus.RESERVED


def test_oversized_upload_is_rejected(app, deferred_reservation, client_actor, proof_file):
    app.config["MAX_PROOF_BYTES"] = 16

    outcome = upload_proof(deferred_reservation.id, proof_file(data=b"x" * 17), client_actor)

    assert outcome.kind == "validation"


def test_other_client_cannot_upload_proof(app, deferred_reservation, second_client_actor, proof_file):
    outcome = upload_proof(deferred_reservation.id, proof_file(), second_client_actor)

    assert outcome.kind == "not_found"
    assert find_reservation(deferred_reservation.id).proof_path is None


def test_failed_compensation_is_reported_as_persistence_failure(
    app, deferred_reservation, client_actor, proof_file, failing_notifier, monkeypatch
):
    def broken_delete(_reservation):
        raise SQLAlchemyError("database locked")

    monkeypatch.setattr("app.booking.completion.delete_entry", broken_delete)

    outcome = upload_proof(deferred_reservation.id, proof_file(), client_actor)

    assert outcome.kind == "persistence_failure"
    assert outcome.compensated is False
    assert find_reservation(deferred_reservation.id) is not None
    assert get_resource_status("garden:A-3-7") == ResourceStatus.RESERVED


def test_reservation_reviewed_during_delivery_is_not_rolled_back(
    app, deferred_reservation, client_actor, staff_actor, proof_file, stored_proofs, monkeypatch
):
    def approve_then_fail(reservation):
        set_reservation_status(reservation.id, "approved", staff_actor).unwrap()
        raise DeliveryFailure("SMTP timeout")

    monkeypatch.setattr("app.booking.completion.send_confirmation", approve_then_fail)

    outcome = upload_proof(deferred_reservation.id, proof_file(), client_actor)

    assert outcome.kind == "persistence_failure"
    assert outcome.compensated is False
    reservation = find_reservation(deferred_reservation.id)
    assert reservation.status == ReservationStatus.APPROVED
    assert reservation.proof_path
    assert len(stored_proofs()) == 1
    assert get_resource_status("garden:A-3-7") == ResourceStatus.RESERVED
    assert ReservationEvent.query.filter_by(event_type=ReservationEventType.COMPENSATED).count() == 0
