import os
from datetime import date

import pytest

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret")

from portal_app import create_app, db  # noqa: E402
from portal_app.models import (  # noqa: E402
    Assessment,
    AssessmentResult,
    FeeStructure,
    FeeStructureClass,
    SchoolClass,
    Student,
    StudentFee,
    Subject,
    User,
)
from werkzeug.security import generate_password_hash  # noqa: E402

PASSWORD = "secret"


@pytest.fixture()
def app():
    # In-memory SQLite: every app gets its own empty database and cache.
    app = create_app()
    app.config["TESTING"] = True
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def ctx(app):
    """App context for tests that call services directly."""
    with app.app_context():
        yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def _user(username, role):
    u = User(
        username=username,
        password_hash=generate_password_hash(PASSWORD, method="pbkdf2:sha256:1000"),
        role=role,
    )
    db.session.add(u)
    db.session.flush()
    return u


def _result(assessment, student, subject, score, max_marks=100):
    db.session.add(AssessmentResult(
        assessment_id_fk=assessment.assessment_id,
        student_id_fk=student.student_id,
        subject_id_fk=subject.subject_id,
        score=score,
        max_marks=max_marks,
        assessment_date=assessment.assessment_date,
    ))


@pytest.fixture()
def school(app):
    """
    One class with three students, two subjects and two exams.

    CAT 1:    alice 80+70=150, brian 75+75=150, cora 60+50=110
    End Term: alice 90+95=185, brian 50+40=90
    Alice and Brian are billed a 5000 tuition fee.
    """
    with app.app_context():
        _user("admin", "admin")
        _user("teacher", "teacher")
        alice_user = _user("alice", "student")
        brian_user = _user("brian", "student")

        klass = SchoolClass(name="Grade 7 East", grade_level="7", academic_year="2026")
        other_class = SchoolClass(name="Grade 8 West", grade_level="8", academic_year="2026")
        db.session.add_all([klass, other_class])
        db.session.flush()

        alice = Student(reg_no="S001", first_name="Alice", last_name="Wanjiru",
                        class_id_fk=klass.class_id, user_id_fk=alice_user.user_id)
        brian = Student(reg_no="S002", first_name="Brian", last_name="Otieno",
                        class_id_fk=klass.class_id, user_id_fk=brian_user.user_id)
        cora = Student(reg_no="S003", first_name="Cora", last_name="Mutua",
                       class_id_fk=klass.class_id, student_type="Boarding")
        dan = Student(reg_no="S004", first_name="Dan", last_name="Kip", class_id_fk=other_class.class_id)
        math = Subject(name="Mathematics", code="MATH")
        eng = Subject(name="English", code="ENG")
        db.session.add_all([alice, brian, cora, dan, math, eng])
        db.session.flush()

        cat1 = Assessment(title="CAT 1", class_id_fk=klass.class_id, term="Term 1", year=2026,
                          assessment_date=date(2026, 2, 10))
        end_term = Assessment(title="End Term", class_id_fk=klass.class_id, term="Term 1", year=2026,
                              assessment_date=date(2026, 4, 1))
        empty = Assessment(title="CAT 2", class_id_fk=klass.class_id, term="Term 1", year=2026,
                           assessment_date=date(2026, 3, 5))
        db.session.add_all([cat1, end_term, empty])
        db.session.flush()

        for student, scores in ((alice, (80, 70)), (brian, (75, 75)), (cora, (60, 50))):
            _result(cat1, student, math, scores[0])
            _result(cat1, student, eng, scores[1])
        for student, scores in ((alice, (90, 95)), (brian, (50, 40))):
            _result(end_term, student, math, scores[0])
            _result(end_term, student, eng, scores[1])

        tuition = FeeStructure(amount=5000, student_type="Day Scholar", term="Term 1",
                               academic_year="2026", category="Tuition")
        db.session.add(tuition)
        db.session.flush()
        db.session.add(FeeStructureClass(fee_structure_id_fk=tuition.structure_id, class_id_fk=klass.class_id))
        for student in (alice, brian):
            db.session.add(StudentFee(
                student_id_fk=student.student_id,
                fee_structure_id_fk=tuition.structure_id,
                total_billed=5000,
                total_paid=0,
                outstanding_balance=5000,
                status="unpaid",
            ))
        db.session.commit()

        return {
            "class_id": klass.class_id,
            "other_class_id": other_class.class_id,
            "alice": alice.student_id,
            "brian": brian.student_id,
            "cora": cora.student_id,
            "dan": dan.student_id,
            "math": math.subject_id,
            "eng": eng.subject_id,
            "cat1": cat1.assessment_id,
            "end_term": end_term.assessment_id,
            "cat2": empty.assessment_id,
            "tuition": tuition.structure_id,
        }


def login(client, username, password=PASSWORD):
    resp = client.post("/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.get_json()
    token = resp.get_json()["data"]["csrf_token"]
    client.environ_base["HTTP_X_CSRF_TOKEN"] = token
    return token


@pytest.fixture()
def admin_client(app, school):
    c = app.test_client()
    login(c, "admin")
    return c


@pytest.fixture()
def teacher_client(app, school):
    c = app.test_client()
    login(c, "teacher")
    return c


@pytest.fixture()
def student_client(app, school):
    c = app.test_client()
    login(c, "alice")
    return c
