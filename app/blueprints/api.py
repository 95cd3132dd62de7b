"""API blueprint: /api/*

JSON entry points for the UI. Every route is login-protected and goes
through the AutomationEngine; nothing here writes to the database
directly. Writes need the X-CSRFToken header (see /auth/csrf).

Errors map to:
    ValidationError   422
    OwnershipError    403
    NotFoundError     404
    PrimaryWriteError 502  ("Failed to <action>: ...")
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.decorators import admin_required
from app.services.automation import get_engine
from app.services.entity_store import as_dict
from app.services.errors import (
    NotFoundError,
    OwnershipError,
    PrimaryWriteError,
    StoreError,
    ValidationError,
)
from app.services.lead_service import get_lead

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


@api_bp.errorhandler(ValidationError)
def handle_validation(e):
    return jsonify(ok=False, error=str(e)), 422


@api_bp.errorhandler(OwnershipError)
def handle_ownership(e):
    return jsonify(ok=False, error=str(e)), 403


@api_bp.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify(ok=False, error=str(e)), 404


@api_bp.errorhandler(PrimaryWriteError)
def handle_primary_write(e):
    logger.error(f"{request.method} {request.path}: {e}")
    return jsonify(ok=False, error=str(e)), 502


@api_bp.errorhandler(StoreError)
def handle_store(e):
    logger.error(f"{request.method} {request.path}: {e}")
    return jsonify(ok=False, error="The request could not be saved."), 502


def _json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object.")
    return data


def _require(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing field(s): {', '.join(missing)}")


# ──────────────────────────────────────────────
# Leads
# ──────────────────────────────────────────────

@api_bp.route("/leads")
@login_required
def list_leads():
    engine = get_engine()
    leads = engine.list_leads(
        status=request.args.get("status"),
        search=request.args.get("q"),
        tag=request.args.get("tag"),
    )
    return jsonify(ok=True, leads=[as_dict(lead) for lead in leads])


@api_bp.route("/leads", methods=["POST"])
@login_required
def create_lead():
    lead, was_duplicate = get_engine().create_lead(_json())
    status = 200 if was_duplicate else 201
    return jsonify(ok=True, lead=as_dict(lead), duplicate=was_duplicate), status


@api_bp.route("/leads/<lead_id>")
@login_required
def show_lead(lead_id):
    engine = get_engine()
    lead = get_lead(engine, lead_id)
    activities = engine.activities.for_entity(lead_id=lead_id)
    return jsonify(
        ok=True,
        lead=as_dict(lead),
        contact=as_dict(engine.store.get("contacts", lead_id)),
        activities=[as_dict(a) for a in activities],
    )


@api_bp.route("/leads/<lead_id>", methods=["PATCH"])
@login_required
def update_lead(lead_id):
    lead = get_engine().update_lead(lead_id, _json())
    return jsonify(ok=True, lead=as_dict(lead))


@api_bp.route("/leads/<lead_id>/status", methods=["POST"])
@login_required
def change_lead_status(lead_id):
    data = _json()
    _require(data, "status")
    lead = get_engine().change_lead_status(lead_id, data["status"])
    return jsonify(ok=True, lead=as_dict(lead))


@api_bp.route("/leads/<lead_id>/reassign", methods=["POST"])
@admin_required
def reassign_lead(lead_id):
    data = _json()
    _require(data, "agent_id")
    lead = get_engine().reassign_lead(lead_id, data["agent_id"])
    return jsonify(ok=True, lead=as_dict(lead))


# ──────────────────────────────────────────────
# Contacts
# ──────────────────────────────────────────────

@api_bp.route("/contacts/<contact_id>", methods=["PATCH"])
@login_required
def update_contact(contact_id):
    contact = get_engine().update_contact(contact_id, _json())
    return jsonify(ok=True, contact=as_dict(contact))


# ──────────────────────────────────────────────
# Properties
# ──────────────────────────────────────────────

@api_bp.route("/properties", methods=["POST"])
@login_required
def create_property():
    prop = get_engine().create_property(_json())
    return jsonify(ok=True, property=as_dict(prop)), 201


@api_bp.route("/properties/<property_id>/status", methods=["POST"])
@login_required
def change_property_status(property_id):
    data = _json()
    _require(data, "status")
    prop, report = get_engine().change_property_status(property_id, data["status"])
    return jsonify(ok=True, property=as_dict(prop), cascade=report.as_dict())


@api_bp.route("/properties/<property_id>/owner", methods=["POST"])
@login_required
def link_owner(property_id):
    data = _json()
    _require(data, "owner_id")
    result = get_engine().link_property_to_owner(
        property_id, data["owner_id"], data.get("offer_type")
    )
    return jsonify(ok=True, failed_steps=result.failed_steps)


@api_bp.route("/properties/<property_id>/uploads", methods=["POST"])
@login_required
def register_upload(property_id):
    data = _json()
    _require(data, "file_name")
    activity = get_engine().register_upload(
        property_id, data["file_name"], data.get("kind") or "document"
    )
    return jsonify(ok=True, activity=as_dict(activity)), 201


# ──────────────────────────────────────────────
# Calendar
# ──────────────────────────────────────────────

@api_bp.route("/events/viewings", methods=["POST"])
@login_required
def schedule_viewing():
    data = _json()
    _require(data, "property_id", "lead_id", "start")
    event = get_engine().schedule_viewing(
        data["property_id"], data["lead_id"], data["start"], data.get("notes")
    )
    return jsonify(ok=True, event=as_dict(event)), 201


@api_bp.route("/events/<event_id>/complete", methods=["POST"])
@login_required
def complete_event(event_id):
    event = get_engine().complete_event(event_id)
    return jsonify(ok=True, event=as_dict(event))


@api_bp.route("/events/<event_id>/reschedule", methods=["POST"])
@login_required
def reschedule_event(event_id):
    data = _json()
    _require(data, "start")
    event = get_engine().reschedule_event(event_id, data["start"])
    return jsonify(ok=True, event=as_dict(event))


# ──────────────────────────────────────────────
# Notifications
# ──────────────────────────────────────────────

@api_bp.route("/notifications")
@login_required
def list_notifications():
    notifications = get_engine().unread_notifications()
    return jsonify(
        ok=True,
        user_id=current_user.id,
        notifications=[as_dict(n) for n in notifications],
    )


@api_bp.route("/notifications/<notification_id>/read", methods=["POST"])
@login_required
def mark_notification_read(notification_id):
    notification = get_engine().mark_notification_read(notification_id)
    return jsonify(ok=True, notification=as_dict(notification))
