import threading
import weakref
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import date

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..errors import ConsistencyError, EmptyDataError, InputError, LedgerWriteError, NotFoundError
from ..models import FeeStructure, FeeStructureClass, Payment, SchoolClass, Student, StudentFee
from .reconciliation import (
    FEE_SCOPE,
    PAYMENT_COMPLETED,
    STATUSES,
    BilledFee,
    PaymentRecord,
    cache_mismatches,
    reconcile_rows,
    to_money,
)

# Fee cache writes for one student never interleave inside this process.
# Row locks (SELECT ... FOR UPDATE) cover other processes on databases that support them.
# Entries vanish once no thread holds or waits on a student's lock.
_locks_guard = threading.Lock()
_student_locks = weakref.WeakValueDictionary()


@contextmanager
def student_lock(student_id):
    with _locks_guard:
        lock = _student_locks.get(student_id)
        if lock is None:
            lock = _student_locks[student_id] = threading.Lock()
    with lock:
        yield


def _scope():
    return current_app.config.get("FEE_PAYMENT_SCOPE", "student")


def get_student(student_id):
    student = db.session.get(Student, student_id)
    if not student:
        raise NotFoundError("Student not found.", details={"student_id": student_id})
    return student


def get_fee_structure(structure_id):
    structure = db.session.get(FeeStructure, structure_id)
    if not structure:
        raise NotFoundError("Fee structure not found.", details={"fee_structure_id": structure_id})
    return structure


def fetch_payments(student_id, completed_only=False):
    """Ledger entries of a student, oldest first."""
    q = select(Payment).filter(Payment.student_id_fk == student_id)
    if completed_only:
        q = q.filter(Payment.status == PAYMENT_COMPLETED)
    q = q.order_by(Payment.payment_date, Payment.payment_id)
    return db.session.execute(q).scalars().all()


def fetch_fee_structures():
    return db.session.execute(
        select(FeeStructure).order_by(FeeStructure.academic_year, FeeStructure.term, FeeStructure.structure_id)
    ).scalars().all()


def fetch_student_fees(student_id, for_update=False):
    q = select(StudentFee).filter(StudentFee.student_id_fk == student_id).order_by(StudentFee.student_fee_id)
    if for_update:
        q = q.with_for_update().execution_options(populate_existing=True)
    return db.session.execute(q).scalars().all()


def _billed(fee):
    return BilledFee(fee.student_fee_id, fee.fee_structure_id_fk, fee.total_billed)


def _record(payment):
    return PaymentRecord(
        payment.payment_id,
        payment.fee_structure_id_fk,
        payment.amount_paid,
        payment.payment_date,
        payment.status,
    )


def _summarize(student_id, fees, payments):
    return reconcile_rows(student_id, [_billed(f) for f in fees], [_record(p) for p in payments], scope=_scope())


def _write_student_fees(fees, summary):
    by_id = {s.student_fee_id: s for s in summary.rows}
    for fee in fees:
        state = by_id[fee.student_fee_id]
        fee.total_paid = state.total_paid
        fee.outstanding_balance = state.outstanding
        fee.status = state.status
        fee.last_payment_date = state.last_payment_date


def reconcile(student_id):
    """Read-only reconciliation of a student's fees against the payment ledger."""
    get_student(student_id)
    fees = fetch_student_fees(student_id)
    if not fees:
        raise EmptyDataError("No fees billed to this student.", details={"student_id": student_id})
    return _summarize(student_id, fees, fetch_payments(student_id))


def record_payment(student_id, amount, payment_date=None, fee_structure_id=None, method="mpesa",
                   reference_no=None, term=None, academic_year=None, created_by_user_id=None):
    """
    Append a completed payment and rewrite every fee row of the student.

    The insert and the fee row updates share one transaction: if any part
    fails nothing is kept and LedgerWriteError is raised.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise InputError("Payment amount must be greater than zero.", details={"amount": str(amount)})
    get_student(student_id)

    billed = {f.fee_structure_id_fk: f for f in fetch_student_fees(student_id)}
    if not billed:
        raise EmptyDataError("No fees billed to this student.", details={"student_id": student_id})
    if fee_structure_id is None and _scope() == FEE_SCOPE:
        raise InputError("fee_structure_id is required when payments are tracked per fee.")
    if fee_structure_id is not None and fee_structure_id not in billed:
        raise InputError(
            "This fee is not billed to the student.",
            details={"student_id": student_id, "fee_structure_id": fee_structure_id},
        )
    structure = billed[fee_structure_id].fee_structure if fee_structure_id is not None else None

    with student_lock(student_id):
        try:
            fees = fetch_student_fees(student_id, for_update=True)
            payment = Payment(
                student_id_fk=student_id,
                fee_structure_id_fk=fee_structure_id,
                amount_paid=amount,
                payment_date=payment_date or date.today(),
                method=(method or "mpesa").strip().lower(),
                status=PAYMENT_COMPLETED,
                reference_no=reference_no,
                term=term or (structure.term if structure else None),
                academic_year=academic_year or (structure.academic_year if structure else None),
                created_by_user_id=created_by_user_id,
            )
            db.session.add(payment)
            db.session.flush()

            summary = _summarize(student_id, fees, fetch_payments(student_id))
            _write_student_fees(fees, summary)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.exception("Payment for student %s rolled back", student_id)
            raise LedgerWriteError(
                "Payment could not be recorded; nothing was saved.",
                details={"student_id": student_id},
            ) from e

    current_app.logger.info(
        "Recorded payment %s of %s for student %s (%d fee rows updated)",
        payment.payment_id, amount, student_id, len(fees),
    )
    return payment, summary


def refresh_student_fees(student_id):
    """Rebuild a student's cached fee rows from the ledger."""
    get_student(student_id)
    with student_lock(student_id):
        try:
            fees = fetch_student_fees(student_id, for_update=True)
            if not fees:
                raise EmptyDataError("No fees billed to this student.", details={"student_id": student_id})
            summary = _summarize(student_id, fees, fetch_payments(student_id))
            _write_student_fees(fees, summary)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.exception("Fee cache refresh for student %s rolled back", student_id)
            raise LedgerWriteError("Fee cache could not be refreshed.", details={"student_id": student_id}) from e
    current_app.logger.info("Refreshed %d fee rows for student %s", len(fees), student_id)
    return summary


def check_fee_cache(student_id):
    """
    Verify cached fee rows against the ledger.

    Raises ConsistencyError on any difference; use refresh_student_fees to repair.
    """
    get_student(student_id)
    fees = fetch_student_fees(student_id)
    if not fees:
        raise EmptyDataError("No fees billed to this student.", details={"student_id": student_id})
    summary = _summarize(student_id, fees, fetch_payments(student_id))
    problems = cache_mismatches({f.student_fee_id: f for f in fees}, summary)
    if problems:
        current_app.logger.warning("Fee cache mismatch for student %s: %d fields", student_id, len(problems))
        raise ConsistencyError(
            "Cached fee balances disagree with the payment ledger.",
            details={"student_id": student_id, "mismatches": problems},
        )
    return summary


def bill_fee_structure(amount, student_type, class_ids, term=None, academic_year=None, category=None,
                       structure_id=None):
    """
    Create or update a fee structure and bill it to the matching students.

    Students of the mapped classes whose student_type matches get a StudentFee
    row (created or updated); their cached balances are recomputed from the
    ledger in the same transaction. On re-billing, students who no longer
    match lose their row for this structure, unless a completed payment was
    made against it, in which case nothing is written.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise InputError("Fee amount must be greater than zero.", details={"amount": str(amount)})
    student_type = (student_type or "").strip()
    if not student_type:
        raise InputError("student_type is required.")
    class_ids = sorted({int(c) for c in class_ids or []})
    if not class_ids:
        raise InputError("Select at least one class for this fee.")
    known = set(db.session.execute(
        select(SchoolClass.class_id).filter(SchoolClass.class_id.in_(class_ids))
    ).scalars().all())
    missing = [c for c in class_ids if c not in known]
    if missing:
        raise NotFoundError("Class not found.", details={"class_ids": missing})

    structure = get_fee_structure(structure_id) if structure_id is not None else FeeStructure()
    students = db.session.execute(
        select(Student).filter(
            Student.class_id_fk.in_(class_ids),
            Student.student_type == student_type,
            Student.is_active.is_(True),
        ).order_by(Student.student_id)
    ).scalars().all()

    dropped = []
    if structure_id is not None:
        keep = {s.student_id for s in students}
        dropped = sorted({
            sid for sid in db.session.execute(
                select(StudentFee.student_id_fk).filter_by(fee_structure_id_fk=structure.structure_id)
            ).scalars().all()
            if sid not in keep
        })

    created = updated = removed = 0
    with ExitStack() as stack:
        for sid in sorted({s.student_id for s in students} | set(dropped)):
            stack.enter_context(student_lock(sid))

        if dropped:
            paid_against = db.session.execute(
                select(Payment.student_id_fk).filter(
                    Payment.fee_structure_id_fk == structure.structure_id,
                    Payment.student_id_fk.in_(dropped),
                    Payment.status == PAYMENT_COMPLETED,
                ).distinct()
            ).scalars().all()
            if paid_against:
                raise InputError(
                    "Students who paid toward this fee cannot be dropped from it.",
                    code="fee_has_payments",
                    status_code=409,
                    details={"fee_structure_id": structure.structure_id, "student_ids": sorted(paid_against)},
                )

        try:
            structure.amount = amount
            structure.student_type = student_type
            structure.term = term
            structure.academic_year = academic_year
            structure.category = category
            db.session.add(structure)
            db.session.flush()

            existing_maps = db.session.execute(
                select(FeeStructureClass).filter_by(fee_structure_id_fk=structure.structure_id)
            ).scalars().all()
            for m in existing_maps:
                if m.class_id_fk not in class_ids:
                    db.session.delete(m)
            mapped = {m.class_id_fk for m in existing_maps}
            for cid in class_ids:
                if cid not in mapped:
                    db.session.add(FeeStructureClass(fee_structure_id_fk=structure.structure_id, class_id_fk=cid))

            for s in students:
                fees = fetch_student_fees(s.student_id, for_update=True)
                row = next((f for f in fees if f.fee_structure_id_fk == structure.structure_id), None)
                if row is None:
                    row = StudentFee(student_id_fk=s.student_id, fee_structure_id_fk=structure.structure_id)
                    db.session.add(row)
                    db.session.flush()
                    fees.append(row)
                    created += 1
                else:
                    updated += 1
                row.total_billed = amount
                summary = _summarize(s.student_id, fees, fetch_payments(s.student_id))
                _write_student_fees(fees, summary)

            for sid in dropped:
                fees = fetch_student_fees(sid, for_update=True)
                remaining = []
                for f in fees:
                    if f.fee_structure_id_fk == structure.structure_id:
                        db.session.delete(f)
                        removed += 1
                    else:
                        remaining.append(f)
                if remaining:
                    _write_student_fees(remaining, _summarize(sid, remaining, fetch_payments(sid)))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.exception("Billing fee structure %s rolled back", structure_id)
            raise LedgerWriteError("Fee structure could not be billed; nothing was saved.") from e

    current_app.logger.info(
        "Billed fee structure %s to %d students (%d new, %d updated, %d removed)",
        structure.structure_id, len(students), created, updated, removed,
    )
    return {
        "fee_structure_id": structure.structure_id,
        "billed_students": len(students),
        "created": created,
        "updated": updated,
        "removed": removed,
    }


def fee_collection_summary(class_id=None, student_type=None, status=None):
    """
    Billed, collected and outstanding totals across billed students.

    Figures come from the ledger, not the cached rows.
    """
    if status is not None and status not in STATUSES:
        raise InputError("Unknown fee status.", details={"status": status})

    q = select(StudentFee, Student).join(Student, StudentFee.student_id_fk == Student.student_id)
    if class_id is not None:
        q = q.filter(Student.class_id_fk == class_id)
    if student_type:
        q = q.filter(Student.student_type == student_type)
    fee_rows = db.session.execute(q.order_by(Student.reg_no, StudentFee.student_fee_id)).all()

    fees_by_student = defaultdict(list)
    students = {}
    for fee, student in fee_rows:
        fees_by_student[student.student_id].append(fee)
        students[student.student_id] = student

    payments_by_student = defaultdict(list)
    if students:
        for p in db.session.execute(
            select(Payment).filter(Payment.student_id_fk.in_(list(students)))
            .order_by(Payment.payment_date, Payment.payment_id)
        ).scalars().all():
            payments_by_student[p.student_id_fk].append(p)

    rows = []
    counts = {s: 0 for s in STATUSES}
    total_billed = total_paid = total_outstanding = to_money(0)
    for sid, fees in fees_by_student.items():
        summary = _summarize(sid, fees, payments_by_student[sid])
        if status is not None and summary.status != status:
            continue
        s = students[sid]
        counts[summary.status] += 1
        total_billed += summary.total_billed
        total_paid += summary.total_paid
        total_outstanding += summary.outstanding
        row = summary.to_dict()
        row.pop("rows")
        row.update({
            "reg_no": s.reg_no,
            "student_name": s.full_name,
            "class_id": s.class_id_fk,
            "student_type": s.student_type,
        })
        rows.append(row)

    return {
        "students": len(rows),
        "total_billed": float(total_billed),
        "total_collected": float(total_paid),
        "total_outstanding": float(total_outstanding),
        "status_counts": counts,
        "rows": rows,
    }


def reconcile_all(fix=False):
    """Check the fee cache of every billed student, refreshing stale ones when ``fix`` is set."""
    student_ids = db.session.execute(
        select(StudentFee.student_id_fk).distinct().order_by(StudentFee.student_id_fk)
    ).scalars().all()
    inconsistent = []
    fixed = []
    for sid in student_ids:
        try:
            check_fee_cache(sid)
        except ConsistencyError as e:
            inconsistent.append({"student_id": sid, "mismatches": e.details.get("mismatches", [])})
            if fix:
                refresh_student_fees(sid)
                fixed.append(sid)
    return {"checked": len(student_ids), "inconsistent": inconsistent, "fixed": fixed}
