from __future__ import annotations

from flask import abort, jsonify, request, send_file
from flask_login import current_user, login_required

from app.booking import booking_bp
from app.booking.artifacts import get_artifact_store
from app.booking.completion import upload_proof
from app.booking.errors import BookingError, BookingOutcome, ValidationError
from app.booking.ledger import get_reservation, list_reservations, reservation_as_dict
from app.booking.policy import Actor
from app.booking.query import (
    columbarium_layout,
    garden_overview,
    quote_columbarium_slot,
    reservation_statistics,
    resource_view,
    unified_graves,
)
from app.booking.services import (
    change_resource_status,
    create_reservation,
    delete_reservation,
    set_reservation_status,
)
from app.core.permissions import require_role

TRUE_VALUES = {"1", "true", "yes", "on"}


def _actor() -> Actor:
    return Actor.from_user(current_user)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _flag(payload: dict, key: str) -> bool:
    value = payload.get(key)
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def error_response(error: BookingError, compensated: bool = False):
    body = {
        "ok": False,
        "error": error.kind,
        "message": str(error),
        "retryable": error.retryable,
        "compensated": compensated,
    }
    return jsonify(body), error.http_status


def _outcome_response(outcome: BookingOutcome, success_status: int = 200):
    if not outcome.ok:
        return error_response(outcome.error, compensated=outcome.compensated)
    body: dict[str, object] = {"ok": True}
    if outcome.reservation is not None:
        body["reservation"] = reservation_as_dict(outcome.reservation)
    if outcome.resource is not None:
        body["resource"] = outcome.resource.as_dict()
    return jsonify(body), success_status


def _visible_reservation(reservation_id: int):
    try:
        reservation = get_reservation(reservation_id)
    except BookingError:
        abort(404)
    if not current_user.is_staff and reservation.client_id != current_user.id:
        abort(404)
    return reservation


@booking_bp.get("/resources")
def resources_index():
    filters = {
        "garden": request.args.get("garden", "").strip(),
        "status": request.args.get("status", "").strip(),
    }
    rows = unified_graves(filters)
    return jsonify({"resources": rows, "total": len(rows)})


@booking_bp.get("/resources/<resource_ref>")
def resource_detail(resource_ref: str):
    try:
        return jsonify({"resource": resource_view(resource_ref)})
    except BookingError as exc:
        return error_response(exc)


@booking_bp.post("/resources/<resource_ref>/status")
@login_required
@require_role("admin")
def resource_change_status(resource_ref: str):
    payload = _payload()
    outcome = change_resource_status(resource_ref, str(payload.get("status") or ""), _actor())
    return _outcome_response(outcome)


@booking_bp.get("/gardens")
def gardens_index():
    return jsonify({"gardens": garden_overview()})


@booking_bp.get("/columbarium/layout")
def columbarium_layout_view():
    floor = request.args.get("floor", type=int)
    section = request.args.get("section", "").strip() or None
    return jsonify(columbarium_layout(floor=floor, section=section))


@booking_bp.get("/columbarium/<code>/quote")
def columbarium_quote(code: str):
    features = [item for item in request.args.get("features", "").split(",") if item.strip()]
    try:
        quote = quote_columbarium_slot(
            code,
            lease_years=request.args.get("lease_years", type=int),
            features=features,
        )
    except BookingError as exc:
        return error_response(exc)
    return jsonify({"quote": quote})


@booking_bp.post("/reservations")
@login_required
def reservations_create():
    payload = _payload()
    resource_ref = str(payload.get("resource") or "").strip()
    if not resource_ref:
        return error_response(ValidationError("Missing resource"))
    outcome = create_reservation(
        resource_ref,
        _actor(),
        payload,
        proof=request.files.get("proof"),
        defer_proof=_flag(payload, "defer_proof"),
    )
    return _outcome_response(outcome, success_status=201)


@booking_bp.get("/reservations")
@login_required
def reservations_index():
    filters = {
        "status": request.args.get("status", "").strip(),
        "catalog": request.args.get("catalog", "").strip(),
        "resource_code": request.args.get("resource_code", "").strip(),
        "q": request.args.get("q", "").strip(),
    }
    try:
        data = list_reservations(
            filters,
            page=request.args.get("page", 1, type=int),
            page_size=request.args.get("page_size", 20, type=int),
            client_id=None if current_user.is_staff else current_user.id,
        )
    except BookingError as exc:
        return error_response(exc)
    return jsonify(data)


@booking_bp.get("/reservations/statistics")
@login_required
@require_role("staff", "admin")
def reservations_statistics():
    return jsonify(reservation_statistics())


@booking_bp.get("/reservations/<int:reservation_id>")
@login_required
def reservation_detail(reservation_id: int):
    reservation = _visible_reservation(reservation_id)
    return jsonify({"reservation": reservation_as_dict(reservation)})


@booking_bp.patch("/reservations/<int:reservation_id>/status")
@login_required
def reservation_change_status(reservation_id: int):
    payload = _payload()
    outcome = set_reservation_status(
        reservation_id,
        str(payload.get("status") or ""),
        _actor(),
        reason=str(payload.get("reason") or ""),
    )
    return _outcome_response(outcome)


@booking_bp.delete("/reservations/<int:reservation_id>")
@login_required
@require_role("admin")
def reservation_delete(reservation_id: int):
    outcome = delete_reservation(reservation_id, _actor())
    if not outcome.ok:
        return error_response(outcome.error, compensated=outcome.compensated)
    return jsonify({"ok": True, "deleted": reservation_id})


@booking_bp.post("/reservations/<int:reservation_id>/proof")
@login_required
def reservation_upload_proof(reservation_id: int):
    outcome = upload_proof(reservation_id, request.files.get("proof"), _actor())
    return _outcome_response(outcome)


@booking_bp.get("/reservations/<int:reservation_id>/proof")
@login_required
def reservation_download_proof(reservation_id: int):
    reservation = _visible_reservation(reservation_id)
    if not reservation.proof_path:
        abort(404)
    absolute = get_artifact_store().path_for(reservation.proof_path)
    if not absolute.exists():
        abort(404)
    return send_file(absolute, as_attachment=True, download_name=absolute.name)
