from datetime import datetime, timezone

from flask_login import UserMixin

from . import db


def utc_now():
    return datetime.now(timezone.utc)


MONEY = db.Numeric(12, 2)

# ==========================================
# ACCOUNTS & PEOPLE
# ==========================================

class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(128), unique=True, nullable=False)
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="student")  # admin, teacher, student
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    def get_id(self):
        return str(self.user_id)


class SchoolClass(db.Model):
    __tablename__ = "classes"
    class_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    grade_level = db.Column(db.String(32))
    academic_year = db.Column(db.String(16))
    created_at = db.Column(db.DateTime, default=utc_now)

    students = db.relationship("Student", backref="school_class", lazy=True)


class Student(db.Model):
    __tablename__ = "students"
    student_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"))
    reg_no = db.Column(db.String(32), unique=True, nullable=False)
    first_name = db.Column(db.String(64))
    last_name = db.Column(db.String(64))
    # "Day Scholar" or "Boarding"; fee structures are billed per type
    student_type = db.Column(db.String(32), default="Day Scholar")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Subject(db.Model):
    __tablename__ = "subjects"
    subject_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    code = db.Column(db.String(32), unique=True)
    is_active = db.Column(db.Boolean, default=True)


# ==========================================
# ASSESSMENTS & RESULTS
# ==========================================

class Assessment(db.Model):
    __tablename__ = "assessments"
    assessment_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(128), nullable=False)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    term = db.Column(db.String(16))
    year = db.Column(db.Integer)
    assessment_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    results = db.relationship("AssessmentResult", backref="assessment", lazy=True)


class AssessmentResult(db.Model):
    __tablename__ = "assessment_results"
    result_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    assessment_id_fk = db.Column(db.Integer, db.ForeignKey("assessments.assessment_id"), nullable=False, index=True)
    subject_id_fk = db.Column(db.Integer, db.ForeignKey("subjects.subject_id"), nullable=False)
    score = db.Column(db.Float, nullable=False)
    max_marks = db.Column(db.Float, nullable=False)
    assessment_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    subject = db.relationship("Subject", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("student_id_fk", "assessment_id_fk", "subject_id_fk", name="uq_result_student_assessment_subject"),
        db.CheckConstraint("score <= max_marks", name="ck_result_score_within_max"),
    )


# ==========================================
# FEES
# ==========================================

class FeeStructure(db.Model):
    __tablename__ = "fee_structures"
    structure_id = db.Column(db.Integer, primary_key=True)
    amount = db.Column(MONEY, nullable=False)
    student_type = db.Column(db.String(32), nullable=False)
    term = db.Column(db.String(16))
    academic_year = db.Column(db.String(16))
    category = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utc_now)


class FeeStructureClass(db.Model):
    __tablename__ = "fee_structure_classes"
    mapping_id = db.Column(db.Integer, primary_key=True)
    fee_structure_id_fk = db.Column(db.Integer, db.ForeignKey("fee_structures.structure_id"), nullable=False)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("fee_structure_id_fk", "class_id_fk", name="uq_fee_structure_class"),
    )


class StudentFee(db.Model):
    """Cached per-student billing row. Always derivable from the Payment ledger."""
    __tablename__ = "student_fees"
    student_fee_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    fee_structure_id_fk = db.Column(db.Integer, db.ForeignKey("fee_structures.structure_id"), nullable=False)
    total_billed = db.Column(MONEY, nullable=False, default=0)
    total_paid = db.Column(MONEY, nullable=False, default=0)
    outstanding_balance = db.Column(MONEY, nullable=False, default=0)
    status = db.Column(db.String(16), default="unpaid")  # paid, partial, unpaid
    last_payment_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    fee_structure = db.relationship("FeeStructure", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("student_id_fk", "fee_structure_id_fk", name="uq_student_fee_structure"),
    )


class Payment(db.Model):
    """Append-only payment ledger."""
    __tablename__ = "payments"
    payment_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False, index=True)
    fee_structure_id_fk = db.Column(db.Integer, db.ForeignKey("fee_structures.structure_id"))
    amount_paid = db.Column(MONEY, nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    method = db.Column(db.String(32), default="mpesa")
    status = db.Column(db.String(16), default="completed")  # completed, failed, reversed
    reference_no = db.Column(db.String(64))
    term = db.Column(db.String(16))
    academic_year = db.Column(db.String(16))
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)
