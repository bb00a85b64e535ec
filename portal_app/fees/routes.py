import csv
from datetime import date
from io import StringIO

from flask import Response, request
from flask_login import current_user, login_required

from . import fees_bp
from .. import csrf_required
from ..api_utils import api_error, api_success
from ..decorators import can_view_student, role_required
from ..errors import InputError
from . import services
from .reconciliation import money_out

STAFF_ROLES = ("admin", "teacher")


def _parse_date(value, name):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise InputError(f"{name} must be a date (YYYY-MM-DD).", details={name: str(value)}) from None


def _optional_int(value, name):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InputError(f"{name} must be an integer.", details={name: str(value)}) from None


def _payment_dict(p):
    return {
        "payment_id": p.payment_id,
        "fee_structure_id": p.fee_structure_id_fk,
        "amount_paid": money_out(p.amount_paid),
        "payment_date": p.payment_date.isoformat() if p.payment_date else None,
        "method": p.method,
        "status": p.status,
        "reference_no": p.reference_no,
        "term": p.term,
        "academic_year": p.academic_year,
    }


def _structure_dict(fs):
    return {
        "fee_structure_id": fs.structure_id,
        "amount": money_out(fs.amount),
        "student_type": fs.student_type,
        "term": fs.term,
        "academic_year": fs.academic_year,
        "category": fs.category,
    }


# --- STUDENT FEES ---

@fees_bp.route("/students/<int:student_id>/fees", methods=["GET"])
@login_required
def student_fees(student_id):
    if not can_view_student(student_id):
        return api_error("forbidden", "You can only view your own fees.", 403)
    return api_success(services.reconcile(student_id).to_dict())


@fees_bp.route("/students/<int:student_id>/payments", methods=["GET"])
@login_required
def list_payments(student_id):
    if not can_view_student(student_id):
        return api_error("forbidden", "You can only view your own payments.", 403)
    services.get_student(student_id)
    payments = services.fetch_payments(student_id)
    return api_success([_payment_dict(p) for p in payments], meta={"count": len(payments)})


@fees_bp.route("/students/<int:student_id>/payments", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def create_payment(student_id):
    data = request.get_json(silent=True) or {}
    if data.get("amount") in (None, ""):
        raise InputError("amount is required.")
    payment, summary = services.record_payment(
        student_id,
        data.get("amount"),
        payment_date=_parse_date(data.get("payment_date"), "payment_date"),
        fee_structure_id=_optional_int(data.get("fee_structure_id"), "fee_structure_id"),
        method=data.get("method") or "mpesa",
        reference_no=(data.get("reference_no") or "").strip() or None,
        term=data.get("term"),
        academic_year=data.get("academic_year"),
        created_by_user_id=current_user.user_id,
    )
    return api_success({"payment": _payment_dict(payment), "fees": summary.to_dict()}, status=201)


@fees_bp.route("/students/<int:student_id>/fees/check", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def check_student_fees(student_id):
    summary = services.check_fee_cache(student_id)
    return api_success({"consistent": True, "fees": summary.to_dict()})


@fees_bp.route("/students/<int:student_id>/fees/refresh", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def refresh_student_fees(student_id):
    summary = services.refresh_student_fees(student_id)
    return api_success(summary.to_dict())


# --- FEE STRUCTURES & COLLECTION ---

@fees_bp.route("/fees/structures", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def list_fee_structures():
    return api_success([_structure_dict(fs) for fs in services.fetch_fee_structures()])


@fees_bp.route("/fees/structures", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def bill_fee_structure():
    data = request.get_json(silent=True) or {}
    if data.get("amount") in (None, ""):
        raise InputError("amount is required.")
    class_ids = data.get("class_ids") or []
    if not isinstance(class_ids, list):
        raise InputError("class_ids must be a list.")
    try:
        class_ids = [int(c) for c in class_ids]
    except (TypeError, ValueError):
        raise InputError("class_ids must be integers.") from None

    result = services.bill_fee_structure(
        data.get("amount"),
        data.get("student_type") or "Day Scholar",
        class_ids,
        term=data.get("term"),
        academic_year=data.get("academic_year"),
        category=data.get("category"),
        structure_id=_optional_int(data.get("fee_structure_id"), "fee_structure_id"),
    )
    return api_success(result, status=201 if result["created"] else 200)


def _summary_filters():
    return {
        "class_id": request.args.get("class_id", type=int),
        "student_type": (request.args.get("student_type") or "").strip() or None,
        "status": (request.args.get("status") or "").strip().lower() or None,
    }


@fees_bp.route("/fees/summary", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def fees_summary():
    summary = services.fee_collection_summary(**_summary_filters())
    rows = summary.pop("rows")
    return api_success({"totals": summary, "students": rows})


@fees_bp.route("/fees/export.csv", methods=["GET"])
@login_required
@role_required("admin")
def export_fees_csv():
    summary = services.fee_collection_summary(**_summary_filters())

    si = StringIO()
    writer = csv.writer(si)
    writer.writerow(["Reg No", "Name", "Student Type", "Billed", "Paid", "Outstanding", "Status", "Last Payment"])
    for r in summary["rows"]:
        writer.writerow([
            r["reg_no"], r["student_name"], r["student_type"],
            f"{r['total_billed']:.2f}", f"{r['total_paid']:.2f}", f"{r['outstanding']:.2f}",
            r["status"], r["last_payment_date"] or "",
        ])

    return Response(
        si.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=fee_collection.csv"},
    )
