from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, request
from werkzeug.exceptions import BadRequest

from app.identity.db import db_session
from app.identity.models import Business
from app.identity.modules.customer_linking.accounts import AccountDescriptor
from app.identity.modules.customer_linking.service import (
    find_customers_by_phone,
    find_or_create_guest_customer,
    link_user_to_customer,
)

bp = Blueprint("customer_linking", __name__)


def _require_business(business_id: int) -> Business:
    b = db_session().get(Business, business_id)
    if b is None:
        abort(404)
    return b


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequest("Expected a JSON object.")
    return payload


def _guest_fields(payload: dict) -> dict:
    """Text fields must be strings; phone_opt_in may also be a JSON boolean."""
    for field in ("email", "first_name", "last_name", "phone"):
        value = payload.get(field)
        if value is not None and not isinstance(value, str):
            raise BadRequest(f"{field} must be a string.")
    opt_in = payload.get("phone_opt_in")
    if opt_in is not None and not isinstance(opt_in, (str, bool)):
        raise BadRequest("phone_opt_in must be a boolean.")
    return payload


def _current_account() -> AccountDescriptor:
    """
    Set by the authentication layer (session/OAuth callback) before the request
    reaches us. Accepts an AccountDescriptor or a plain mapping.
    """
    acct = getattr(g, "current_account", None)
    if acct is None:
        abort(401)
    if not isinstance(acct, AccountDescriptor):
        try:
            acct = AccountDescriptor.from_mapping(acct)
        except (TypeError, ValueError) as e:
            raise BadRequest(f"Invalid account: {e}") from e
    if not acct.normalized_email:
        raise BadRequest("Account email is required to link a customer.")
    return acct


@bp.post("/businesses/<int:business_id>/guest-customers")
def guest_customer_create(business_id: int):
    s = db_session()
    _require_business(business_id)
    payload = _guest_fields(_json_payload())
    email = (payload.get("email") or "").strip()
    if not email:
        raise BadRequest("Email is required.")
    c = find_or_create_guest_customer(s, business_id, email, payload)
    s.commit()
    return jsonify({"customer": c.to_dict()}), 200


@bp.post("/businesses/<int:business_id>/customer-links")
def customer_link_create(business_id: int):
    s = db_session()
    _require_business(business_id)
    account = _current_account()
    c = link_user_to_customer(s, business_id, account)
    s.commit()
    return jsonify({"customer": c.to_dict()}), 200


@bp.get("/businesses/<int:business_id>/customers")
def customers_by_phone(business_id: int):
    _require_business(business_id)
    phone = (request.args.get("phone") or "").strip()
    if not phone:
        raise BadRequest("phone query parameter is required.")
    customers = find_customers_by_phone(db_session(), business_id, phone)
    return jsonify({"customers": [c.to_dict() for c in customers]}), 200
