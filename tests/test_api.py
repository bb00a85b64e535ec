import io


def data_of(resp):
    body = resp.get_json()
    assert body["success"] is True, body
    return body["data"]


def error_of(resp):
    body = resp.get_json()
    assert body["success"] is False, body
    return body["error"]


# --- auth & plumbing ---

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert data_of(resp)["database"] is True


def test_login_rejects_bad_password(client, school):
    resp = client.post("/login", json={"username": "admin", "password": "wrong"})
    assert resp.status_code == 401
    assert error_of(resp)["code"] == "invalid_credentials"


def test_login_requires_fields(client):
    resp = client.post("/login", json={"username": ""})
    assert resp.status_code == 422


def test_api_requires_login(client, school):
    resp = client.get(f"/api/assessments/{school['cat1']}/rankings")
    assert resp.status_code == 401
    assert error_of(resp)["code"] == "unauthorized"


def test_me_and_logout(student_client, school):
    me = data_of(student_client.get("/me"))
    assert me["username"] == "alice"
    assert me["student_id"] == school["alice"]

    assert student_client.post("/logout").status_code == 200
    assert student_client.get("/me").status_code == 401


def test_csrf_token_endpoint(client):
    token = data_of(client.get("/csrf-token"))["csrf_token"]
    assert token
    assert data_of(client.get("/csrf-token"))["csrf_token"] == token


def test_writes_need_csrf_token(admin_client, school):
    admin_client.environ_base.pop("HTTP_X_CSRF_TOKEN")
    resp = admin_client.post(
        f"/api/assessments/{school['cat2']}/results",
        json={"student_id": school["alice"], "subject_id": school["math"], "score": 10, "max_marks": 20},
    )
    assert resp.status_code == 403
    assert error_of(resp)["code"] == "csrf_missing"

    admin_client.environ_base["HTTP_X_CSRF_TOKEN"] = "forged"
    resp = admin_client.post(f"/api/students/{school['alice']}/payments", json={"amount": 100})
    assert error_of(resp)["code"] == "csrf_mismatch"


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert error_of(resp)["code"] == "404"


# --- grades & results ---

def test_classify_endpoint(student_client):
    assert data_of(student_client.get("/api/grades/classify?percentage=95"))["code"] == "EE1"
    assert data_of(student_client.get("/api/grades/classify?percentage=89.999"))["code"] == "EE2"

    resp = student_client.get("/api/grades/classify?percentage=101")
    assert resp.status_code == 422
    assert error_of(resp)["code"] == "invalid_input"
    assert student_client.get("/api/grades/classify?percentage=abc").status_code == 422
    assert student_client.get("/api/grades/classify").status_code == 422


def test_rankings(teacher_client, school):
    data = data_of(teacher_client.get(f"/api/assessments/{school['cat1']}/rankings"))
    positions = {r["reg_no"]: r["position"] for r in data["rankings"]}
    assert positions == {"S001": 1, "S002": 1, "S003": 2}


def test_rankings_empty_exam(teacher_client, school):
    resp = teacher_client.get(f"/api/assessments/{school['cat2']}/rankings")
    assert resp.status_code == 404
    assert error_of(resp)["code"] == "no_data"


def test_students_cannot_see_rankings(student_client, school):
    resp = student_client.get(f"/api/assessments/{school['cat1']}/rankings")
    assert resp.status_code == 403


def test_saved_result_refreshes_cached_rankings(admin_client, school):
    url = f"/api/assessments/{school['cat1']}/rankings"
    before = {r["reg_no"]: r["position"] for r in data_of(admin_client.get(url))["rankings"]}
    assert before["S003"] == 2

    resp = admin_client.post(
        f"/api/assessments/{school['cat1']}/results",
        json={"student_id": school["cora"], "subject_id": school["math"], "score": 100, "max_marks": 100},
    )
    assert resp.status_code == 200
    assert data_of(resp)["created"] is False

    after = {r["reg_no"]: r["position"] for r in data_of(admin_client.get(url))["rankings"]}
    assert after == {"S001": 1, "S002": 1, "S003": 1}


def test_save_result_rejects_bad_score(admin_client, school):
    resp = admin_client.post(
        f"/api/assessments/{school['cat2']}/results",
        json={"student_id": school["alice"], "subject_id": school["math"], "score": 120, "max_marks": 100},
    )
    assert resp.status_code == 422

    resp = admin_client.post(
        f"/api/assessments/{school['cat2']}/results",
        json={"student_id": school["alice"], "subject_id": school["math"], "score": 12},
    )
    assert resp.status_code == 422


def test_upload_results(teacher_client, school):
    csv_bytes = b"Reg_no,Name,MATH,ENG\nS001,Alice,30,35\nS002,Brian,20,\nS999,Ghost,10,10\n"
    resp = teacher_client.post(
        f"/api/assessments/{school['cat2']}/results/upload",
        data={"file": (io.BytesIO(csv_bytes), "cat2.csv"), "max_marks": "40"},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200, resp.get_json()
    data = data_of(resp)
    assert data["inserted"] == 3
    assert len(data["skipped"]) == 2
    assert data["max_marks"] == 40.0

    ranking = data_of(teacher_client.get(f"/api/assessments/{school['cat2']}/rankings"))["rankings"]
    assert ranking[0]["reg_no"] == "S001"
    assert ranking[0]["totals"] == "65/80"


def test_upload_without_file(teacher_client, school):
    resp = teacher_client.post(
        f"/api/assessments/{school['cat2']}/results/upload",
        data={},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert error_of(resp)["code"] == "file_missing"


def test_upload_bad_score_writes_nothing(teacher_client, school):
    resp = teacher_client.post(
        f"/api/assessments/{school['cat2']}/results/upload",
        data={"file": (io.BytesIO(b"reg_no,MATH\nS001,abs\n"), "cat2.csv")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 422
    assert teacher_client.get(f"/api/assessments/{school['cat2']}/rankings").status_code == 404


def test_export_results_csv(teacher_client, school):
    resp = teacher_client.get(f"/api/assessments/{school['cat1']}/results/export.csv")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == "Reg No,Name,ENG,MATH,Total,Percentage,Level,Position"
    assert lines[1].startswith("S001,Alice Wanjiru,")
    assert lines[3].endswith(",110/200,55.0,ME2 (L5),2")


def test_student_sees_own_pivot_only(student_client, school):
    data = data_of(student_client.get(f"/api/students/{school['alice']}/pivot"))
    subjects = [r["subject"] for r in data["rows"]]
    assert subjects == ["English", "Mathematics", "Totals", "Position"]
    assert data["rows"][3]["scores"] == {"CAT 1": 1, "End Term": 1}

    assert student_client.get(f"/api/students/{school['brian']}/pivot").status_code == 403


def test_performance(student_client, school):
    data = data_of(student_client.get(f"/api/students/{school['alice']}/performance"))
    assert data["summary"]["trend"] == "improving"
    assert [h["title"] for h in data["history"]] == ["End Term", "CAT 1"]


# --- fees ---

def test_student_fee_summary(student_client, school):
    data = data_of(student_client.get(f"/api/students/{school['alice']}/fees"))
    assert data["total_billed"] == 5000.0
    assert data["status"] == "unpaid"
    assert student_client.get(f"/api/students/{school['brian']}/fees").status_code == 403


def test_fees_for_unbilled_student(admin_client, school):
    resp = admin_client.get(f"/api/students/{school['cora']}/fees")
    assert resp.status_code == 404
    assert error_of(resp)["code"] == "no_data"


def test_record_payments(admin_client, school):
    url = f"/api/students/{school['alice']}/payments"
    resp = admin_client.post(url, json={"amount": 2000, "payment_date": "2026-02-01", "method": "MPESA",
                                        "reference_no": "QK12AB"})
    assert resp.status_code == 201
    assert data_of(resp)["payment"]["method"] == "mpesa"

    resp = admin_client.post(url, json={"amount": "1500.00", "payment_date": "2026-02-20"})
    fees = data_of(resp)["fees"]
    assert fees["total_paid"] == 3500.0
    assert fees["outstanding"] == 1500.0
    assert fees["status"] == "partial"
    assert fees["last_payment_date"] == "2026-02-20"

    listing = admin_client.get(url)
    assert len(data_of(listing)) == 2
    assert listing.get_json()["meta"]["count"] == 2

    check = data_of(admin_client.get(f"/api/students/{school['alice']}/fees/check"))
    assert check["consistent"] is True


def test_payment_validation(admin_client, school):
    url = f"/api/students/{school['alice']}/payments"
    assert admin_client.post(url, json={"amount": -5}).status_code == 422
    assert admin_client.post(url, json={}).status_code == 422
    assert admin_client.post(url, json={"amount": 10, "payment_date": "yesterday"}).status_code == 422
    assert admin_client.post("/api/students/9999/payments", json={"amount": 10}).status_code == 404

    huge = admin_client.post(url, json={"amount": "1e30"})
    assert huge.status_code == 422
    assert error_of(huge)["code"] == "invalid_input"
    assert admin_client.post(url, json={"amount": "10.005"}).status_code == 422
    assert len(data_of(admin_client.get(url))) == 0


def test_teachers_cannot_record_payments(teacher_client, school):
    resp = teacher_client.post(f"/api/students/{school['alice']}/payments", json={"amount": 100})
    assert resp.status_code == 403


def test_fee_cache_check_and_refresh(admin_client, app, school):
    from portal_app import db
    from portal_app.models import StudentFee

    with app.app_context():
        row = db.session.execute(
            db.select(StudentFee).filter_by(student_id_fk=school["brian"])
        ).scalars().first()
        row.total_paid = 999
        db.session.commit()

    resp = admin_client.get(f"/api/students/{school['brian']}/fees/check")
    assert resp.status_code == 409
    assert error_of(resp)["code"] == "reconciliation_inconsistent"

    assert admin_client.post(f"/api/students/{school['brian']}/fees/refresh").status_code == 200
    assert admin_client.get(f"/api/students/{school['brian']}/fees/check").status_code == 200


def test_fee_structures(admin_client, school):
    resp = admin_client.post("/api/fees/structures", json={
        "amount": 1800, "student_type": "Boarding", "class_ids": [school["class_id"]],
        "term": "Term 1", "academic_year": "2026", "category": "Boarding",
    })
    assert resp.status_code == 201
    assert data_of(resp)["billed_students"] == 1

    structures = data_of(admin_client.get("/api/fees/structures"))
    assert {s["category"] for s in structures} == {"Tuition", "Boarding"}

    bad = admin_client.post("/api/fees/structures", json={"amount": 100, "class_ids": "all"})
    assert bad.status_code == 422

    huge = admin_client.post("/api/fees/structures", json={
        "amount": 1e30, "student_type": "Day Scholar", "class_ids": [school["class_id"]],
    })
    assert huge.status_code == 422


def test_collection_summary_and_export(admin_client, school):
    admin_client.post(f"/api/students/{school['brian']}/payments", json={"amount": 5000})

    data = data_of(admin_client.get("/api/fees/summary"))
    assert data["totals"]["students"] == 2
    assert data["totals"]["total_collected"] == 5000.0
    assert data["totals"]["status_counts"]["paid"] == 1
    assert {s["reg_no"] for s in data["students"]} == {"S001", "S002"}

    assert admin_client.get("/api/fees/summary?status=bogus").status_code == 422

    resp = admin_client.get("/api/fees/export.csv?status=paid")
    assert resp.mimetype == "text/csv"
    lines = resp.get_data(as_text=True).splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("S002,Brian Otieno,Day Scholar,5000.00,5000.00,0.00,paid,")
