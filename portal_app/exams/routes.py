import csv
from io import StringIO

from flask import Response, current_app, request
from flask_login import login_required
from sqlalchemy import select

from . import exams_bp
from .. import cache, csrf_required, db, limiter
from ..api_utils import api_error, api_success
from ..decorators import can_view_student, role_required
from ..errors import InputError
from ..models import Student, Subject
from .grading import classify
from .imports import parse_results_upload
from .ranking import rank_exam, ranking_table
from .records import NO_DATA
from . import services

STAFF_ROLES = ("admin", "teacher")


def _float_arg(value, name):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InputError(f"{name} is required.")
    if isinstance(value, bool):
        raise InputError(f"{name} must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InputError(f"{name} must be a number.", details={name: str(value)}) from None


def _int_arg(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InputError(f"{name} must be an integer.", details={name: str(value)}) from None


# --- cached views; invalidated whenever results change ---

@cache.memoize()
def _ranking_payload(assessment_id):
    return services.assessment_rankings(assessment_id)


@cache.memoize()
def _pivot_payload(student_id, class_id, term, year):
    rows = services.student_pivot(student_id, class_id=class_id, term=term, year=year)
    return [r.to_dict() for r in rows]


@cache.memoize()
def _performance_payload(student_id):
    return services.student_performance(student_id)


def _invalidate_results(assessment_id):
    cache.delete_memoized(_ranking_payload, assessment_id)
    # positions of every student in the class may move
    cache.delete_memoized(_pivot_payload)
    cache.delete_memoized(_performance_payload)


# --- EXAM MODULE ROUTES ---

@exams_bp.route("/grades/classify", methods=["GET"])
@login_required
def classify_percentage():
    percentage = _float_arg(request.args.get("percentage"), "percentage")
    return api_success(classify(percentage).to_dict())


@exams_bp.route("/assessments/<int:assessment_id>/rankings", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def assessment_rankings(assessment_id):
    return api_success(_ranking_payload(assessment_id))


@exams_bp.route("/assessments/<int:assessment_id>/results", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
@csrf_required
def save_result(assessment_id):
    data = request.get_json(silent=True) or {}
    student_id = _int_arg(data.get("student_id"), "student_id")
    subject_id = _int_arg(data.get("subject_id"), "subject_id")
    score = _float_arg(data.get("score"), "score")
    max_marks = _float_arg(data.get("max_marks"), "max_marks")

    created = services.save_result(assessment_id, student_id, subject_id, score, max_marks)
    _invalidate_results(assessment_id)
    return api_success({"created": created}, status=201 if created else 200)


@exams_bp.route("/assessments/<int:assessment_id>/results/upload", methods=["POST"])
@login_required
@role_required(*STAFF_ROLES)
@csrf_required
@limiter.limit("20 per minute")
def upload_results(assessment_id):
    assessment = services.get_assessment(assessment_id)
    f = request.files.get("file")
    if not f or not (f.filename or "").strip():
        return api_error("file_missing", "Please select a CSV or Excel file to upload.", 400)

    max_raw = (request.form.get("max_marks") or "").strip()
    if max_raw:
        max_marks = _float_arg(max_raw, "max_marks")
    else:
        max_marks = current_app.config["DEFAULT_MAX_MARKS"]

    entries, ignored = parse_results_upload(f.filename, f.read(), assessment_title=assessment.title)
    summary = services.import_results(assessment_id, entries, max_marks)
    summary["ignored_rows"] = ignored
    summary["max_marks"] = max_marks
    _invalidate_results(assessment_id)
    return api_success(summary)


@exams_bp.route("/assessments/<int:assessment_id>/results/export.csv", methods=["GET"])
@login_required
@role_required(*STAFF_ROLES)
def export_results_csv(assessment_id):
    assessment = services.get_assessment(assessment_id)
    rows = services.fetch_results(assessment_id=assessment_id)
    ranking = rank_exam(rows)

    subject_ids = sorted({r.subject_id for r in rows})
    subjects = {s.subject_id: s for s in db.session.execute(
        select(Subject).filter(Subject.subject_id.in_(subject_ids))
    ).scalars().all()}
    subject_ids.sort(key=lambda sid: (subjects[sid].code or subjects[sid].name or "").lower())
    students = {s.student_id: s for s in db.session.execute(
        select(Student).filter(Student.student_id.in_(list(ranking.keys())))
    ).scalars().all()}
    scores = {(r.student_id, r.subject_id): r.score for r in rows}

    si = StringIO()
    writer = csv.writer(si)
    writer.writerow(
        ["Reg No", "Name"]
        + [subjects[sid].code or subjects[sid].name for sid in subject_ids]
        + ["Total", "Percentage", "Level", "Position"]
    )
    for entry in ranking_table(ranking):
        s = students.get(entry.student_id)
        d = entry.to_dict()
        writer.writerow(
            [s.reg_no if s else "", s.full_name if s else "Unknown"]
            + [scores.get((entry.student_id, sid), NO_DATA) for sid in subject_ids]
            + [d["totals"], d["percentage"], d["level"], d["position"]]
        )

    filename = f"results_{assessment.assessment_id}.csv"
    return Response(
        si.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@exams_bp.route("/students/<int:student_id>/pivot", methods=["GET"])
@login_required
def student_pivot(student_id):
    if not can_view_student(student_id):
        return api_error("forbidden", "You can only view your own results.", 403)
    class_id = request.args.get("class_id", type=int)
    term = (request.args.get("term") or "").strip() or None
    year = request.args.get("year", type=int)
    return api_success({"student_id": student_id, "rows": _pivot_payload(student_id, class_id, term, year)})


@exams_bp.route("/students/<int:student_id>/performance", methods=["GET"])
@login_required
def student_performance(student_id):
    if not can_view_student(student_id):
        return api_error("forbidden", "You can only view your own results.", 403)
    return api_success(_performance_payload(student_id))
