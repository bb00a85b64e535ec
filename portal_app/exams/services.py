from datetime import date

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..errors import EmptyDataError, InputError, NotFoundError
from ..models import Assessment, AssessmentResult, Student, Subject
from .performance import ExamPerformance, summarize_performance
from .pivot import build_pivot
from .ranking import rank_exam, ranking_table
from .records import ResultRow, validate_results


def _to_row(result, assessment):
    return ResultRow(
        student_id=result.student_id_fk,
        assessment_id=result.assessment_id_fk,
        subject_id=result.subject_id_fk,
        score=result.score,
        max_marks=result.max_marks,
        subject_name=result.subject.name if result.subject else None,
        exam_title=assessment.title,
        assessment_date=result.assessment_date or assessment.assessment_date,
    )


def get_assessment(assessment_id):
    assessment = db.session.get(Assessment, assessment_id)
    if not assessment:
        raise NotFoundError("Assessment not found.", details={"assessment_id": assessment_id})
    return assessment


def get_student(student_id):
    student = db.session.get(Student, student_id)
    if not student:
        raise NotFoundError("Student not found.", details={"student_id": student_id})
    return student


def fetch_results(student_id=None, class_id=None, assessment_id=None, term=None, year=None):
    """
    Result rows matching the given filters, read in a single query so a
    ranking is always computed against one consistent snapshot.
    """
    q = select(AssessmentResult, Assessment).join(
        Assessment, AssessmentResult.assessment_id_fk == Assessment.assessment_id
    )
    if student_id is not None:
        q = q.filter(AssessmentResult.student_id_fk == student_id)
    if class_id is not None:
        q = q.filter(Assessment.class_id_fk == class_id)
    if assessment_id is not None:
        q = q.filter(AssessmentResult.assessment_id_fk == assessment_id)
    if term is not None:
        q = q.filter(Assessment.term == term)
    if year is not None:
        q = q.filter(Assessment.year == year)
    q = q.order_by(AssessmentResult.assessment_id_fk, AssessmentResult.student_id_fk, AssessmentResult.subject_id_fk)

    rows = db.session.execute(q).all()
    return [_to_row(res, assessment) for res, assessment in rows]


def rank_assessment(assessment_id):
    """Rank every student of an assessment from its full result set."""
    get_assessment(assessment_id)
    rows = fetch_results(assessment_id=assessment_id)
    if not rows:
        raise EmptyDataError("Data unavailable for this exam.", details={"assessment_id": assessment_id})
    return rank_exam(rows)


def assessment_rankings(assessment_id):
    assessment = get_assessment(assessment_id)
    ranking = rank_assessment(assessment_id)
    students = {
        s.student_id: s
        for s in db.session.execute(
            select(Student).filter(Student.student_id.in_(list(ranking.keys())))
        ).scalars().all()
    }
    table = []
    for entry in ranking_table(ranking):
        s = students.get(entry.student_id)
        row = entry.to_dict()
        row["reg_no"] = s.reg_no if s else None
        row["student_name"] = s.full_name if s else "Unknown"
        table.append(row)
    return {
        "assessment_id": assessment.assessment_id,
        "title": assessment.title,
        "class_id": assessment.class_id_fk,
        "term": assessment.term,
        "year": assessment.year,
        "rankings": table,
    }


def latest_term(student_id, class_id=None):
    """(term, year) of the student's most recent assessment, or (None, None)."""
    q = select(Assessment.term, Assessment.year).join(
        AssessmentResult, AssessmentResult.assessment_id_fk == Assessment.assessment_id
    ).filter(AssessmentResult.student_id_fk == student_id)
    if class_id is not None:
        q = q.filter(Assessment.class_id_fk == class_id)
    q = q.order_by(
        Assessment.year.desc(),
        Assessment.assessment_date.desc(),
        Assessment.assessment_id.desc(),
    ).limit(1)
    row = db.session.execute(q).first()
    return (row.term, row.year) if row else (None, None)


def student_pivot(student_id, class_id=None, term=None, year=None):
    """
    Subject x exam matrix of a student.

    Exam titles repeat every term, so without a term or year filter the
    student's most recent term is shown.
    """
    student = get_student(student_id)
    if class_id is None:
        class_id = student.class_id_fk
    if term is None and year is None:
        term, year = latest_term(student_id, class_id)

    own = fetch_results(student_id=student_id, class_id=class_id, term=term, year=year)
    if not own:
        raise EmptyDataError("No results recorded for this student.", details={"student_id": student_id})

    rankings = {}
    for assessment_id in sorted({r.assessment_id for r in own}):
        title = next(r.exam_title for r in own if r.assessment_id == assessment_id)
        if title in rankings:
            raise InputError(
                "Two assessments share the same title; filter by term or year.",
                details={"title": title},
            )
        rankings[title] = rank_assessment(assessment_id)[student_id]

    return build_pivot(own, student_id, exam_titles=rankings.keys(), rankings=rankings)


def student_performance(student_id, class_id=None):
    """Per-exam ranking history of a student with summary figures."""
    get_student(student_id)
    own = fetch_results(student_id=student_id, class_id=class_id)
    if not own:
        raise EmptyDataError("No results recorded for this student.", details={"student_id": student_id})

    history = []
    for assessment_id in sorted({r.assessment_id for r in own}):
        assessment = get_assessment(assessment_id)
        ranking = rank_assessment(assessment_id)
        history.append(ExamPerformance(
            assessment_id=assessment_id,
            title=assessment.title,
            term=assessment.term,
            year=assessment.year,
            assessment_date=assessment.assessment_date,
            entry=ranking[student_id],
            class_size=len(ranking),
        ))

    history.sort(key=lambda p: (p.assessment_date or date.min, str(p.assessment_id)), reverse=True)
    return {
        "student_id": student_id,
        "history": [p.to_dict() for p in history],
        "summary": summarize_performance(history),
    }


def _upsert(assessment, student_id, subject_id, score, max_marks, assessment_date=None):
    result = db.session.execute(
        select(AssessmentResult).filter_by(
            assessment_id_fk=assessment.assessment_id,
            student_id_fk=student_id,
            subject_id_fk=subject_id,
        )
    ).scalars().first()
    created = result is None
    if created:
        result = AssessmentResult(
            assessment_id_fk=assessment.assessment_id,
            student_id_fk=student_id,
            subject_id_fk=subject_id,
        )
        db.session.add(result)
    result.score = float(score)
    result.max_marks = float(max_marks)
    result.assessment_date = assessment_date or assessment.assessment_date
    return created


def save_result(assessment_id, student_id, subject_id, score, max_marks):
    """Validate and insert or update one result. Returns True if a row was created."""
    assessment = get_assessment(assessment_id)
    student = get_student(student_id)
    if student.class_id_fk != assessment.class_id_fk:
        raise InputError(
            "Student is not in the class this assessment belongs to.",
            details={"student_id": student_id, "assessment_id": assessment_id},
        )
    if not db.session.get(Subject, subject_id):
        raise NotFoundError("Subject not found.", details={"subject_id": subject_id})

    validate_results([ResultRow(student_id, assessment_id, subject_id, score, max_marks)])
    try:
        created = _upsert(assessment, student_id, subject_id, score, max_marks)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to save result for student %s in assessment %s", student_id, assessment_id)
        raise
    current_app.logger.info(
        "Result %s for student %s, subject %s, assessment %s",
        "added" if created else "updated", student_id, subject_id, assessment_id,
    )
    return created


def import_results(assessment_id, entries, max_marks):
    """
    Bulk insert/update results parsed from an upload.

    Entries that name an unknown student or subject are skipped and reported.
    Any malformed score rejects the whole upload before anything is written.
    """
    assessment = get_assessment(assessment_id)

    students = {
        (s.reg_no or "").strip().lower(): s
        for s in db.session.execute(
            select(Student).filter_by(class_id_fk=assessment.class_id_fk)
        ).scalars().all()
    }
    subjects = {
        (s.code or "").strip().lower(): s
        for s in db.session.execute(select(Subject)).scalars().all()
        if s.code
    }

    rows = []
    skipped = []
    for e in entries:
        student = students.get((e["reg_no"] or "").strip().lower())
        subject = subjects.get((e["subject_code"] or "").strip().lower())
        if not student or not subject:
            skipped.append({"line": e.get("line"), "reg_no": e["reg_no"], "subject_code": e["subject_code"]})
            continue
        rows.append(ResultRow(student.student_id, assessment.assessment_id, subject.subject_id, e["score"], max_marks))

    if not rows:
        raise EmptyDataError(
            "No valid results found to upload. Verify subject codes and student registration numbers.",
            details={"skipped": len(skipped)},
        )

    rows = validate_results(rows)
    seen = set()
    for r in rows:
        if (r.student_id, r.subject_id) in seen:
            raise InputError("Upload contains the same student and subject twice.",
                             details={"student_id": r.student_id, "subject_id": r.subject_id})
        seen.add((r.student_id, r.subject_id))

    inserted = updated = 0
    try:
        for r in rows:
            if _upsert(assessment, r.student_id, r.subject_id, r.score, r.max_marks):
                inserted += 1
            else:
                updated += 1
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to import results for assessment %s", assessment_id)
        raise

    if skipped:
        current_app.logger.warning("Skipped %d unmatched upload entries for assessment %s", len(skipped), assessment_id)
    current_app.logger.info(
        "Imported results for assessment %s: %d added, %d updated", assessment_id, inserted, updated
    )
    return {"inserted": inserted, "updated": updated, "skipped": skipped}
