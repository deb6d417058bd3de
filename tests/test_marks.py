from access import Principal, Role
from conftest import add_student, log_in

MARKS = {
    "usn": "1xx21cs001",
    "semester": 5,
    "subjects": [
        {"code": "CS501", "cie1": 20, "cie2": 20, "lab": 0, "assignment": 2, "external": 18},
        {"code": "CS502L", "isLab": True, "cie1": 25, "cie2": 24, "lab": 10, "assignment": 0, "external": 30},
    ],
}


def test_upsert_stores_raw_rows_and_sends_one_email(client, db, department, as_faculty, outbox):
    response = client.post("/api/marks", json=MARKS)
    assert response.status_code == 200
    assert response.get_json()["subjects"] == 2

    rows = db.execute("SELECT * FROM marks WHERE usn = '1XX21CS001' ORDER BY subject_code").fetchall()
    assert [row["subject_code"] for row in rows] == ["CS501", "CS502L"]
    assert "internal" not in rows[0].keys()
    assert rows[1]["is_lab"] == 1

    assert len(outbox.messages) == 1
    assert outbox.messages[0]["to"] == "asha@dept.test"
    assert outbox.messages[0]["subject"] == "Marks Uploaded"


def test_resubmission_updates_in_place(client, db, department, as_faculty):
    client.post("/api/marks", json=MARKS)
    changed = {**MARKS, "subjects": [{"code": "CS501", "cie1": 10, "cie2": 10, "external": 40}]}
    assert client.post("/api/marks", json=changed).status_code == 200

    rows = db.execute("SELECT subject_code, cie1, external FROM marks").fetchall()
    assert len(rows) == 2
    cs501 = next(row for row in rows if row["subject_code"] == "CS501")
    assert (cs501["cie1"], cs501["external"]) == (10, 40)


def test_unknown_subject_writes_nothing(client, db, department, as_faculty, outbox):
    payload = {**MARKS, "subjects": MARKS["subjects"] + [{"code": "XX999", "cie1": 1}]}
    response = client.post("/api/marks", json=payload)
    assert response.status_code == 400
    assert db.execute("SELECT COUNT(*) FROM marks").fetchone()[0] == 0
    assert outbox.messages == []


def test_unknown_student_is_not_found(client, department, as_faculty):
    response = client.post("/api/marks", json={**MARKS, "usn": "1XX21CS404"})
    assert response.status_code == 404


def test_empty_subject_list_is_rejected(client, department, as_faculty):
    assert client.post("/api/marks", json={**MARKS, "subjects": []}).status_code == 400


def test_marks_survive_email_failure(client, db, department, as_faculty, outbox):
    outbox.fail = True
    assert client.post("/api/marks", json=MARKS).status_code == 200
    assert db.execute("SELECT COUNT(*) FROM marks").fetchone()[0] == 2


def test_student_marks_are_derived_on_read(client, department, as_faculty):
    client.post("/api/marks", json=MARKS)
    with client.session_transaction() as sess:
        sess.clear()

    response = client.get("/api/marks/1xx21cs001?semester=5")
    assert response.status_code == 200
    body = response.get_json()
    assert body["role"] == "guest"

    by_code = {row["subject_code"]: row for row in body["subjects"]}
    assert (by_code["CS501"]["internal"], by_code["CS501"]["total"], by_code["CS501"]["result"]) == (22, 40, "P")
    assert (by_code["CS502L"]["internal"], by_code["CS502L"]["total"]) == (25, 55)
    assert by_code["CS502L"]["subject_name"] == "Networks Lab"


def test_missing_marks_are_not_found(client, department):
    assert client.get("/api/marks/1XX21CS002?semester=5").status_code == 404


def test_student_cannot_read_classmate(client, department, as_student):
    assert client.get("/api/marks/1XX21CS002").status_code == 403


def test_report_filters_by_result(client, department, as_faculty):
    client.post("/api/marks", json=MARKS)
    client.post(
        "/api/marks",
        json={"usn": "1XX21CS002", "semester": 5, "subjects": [{"code": "CS501", "cie1": 5, "cie2": 5, "external": 10}]},
    )

    everyone = client.get("/api/marks/report?sem=5&section=A&subject=CS501").get_json()
    assert [row["usn"] for row in everyone] == ["1XX21CS001", "1XX21CS002"]

    failed = client.get("/api/marks/report?sem=5&section=A&subject=CS501&filter=F").get_json()
    assert [(row["usn"], row["result"]) for row in failed] == [("1XX21CS002", "F")]


def test_roster_and_assigned_subjects(client, db, department, as_faculty):
    add_student(db, "1XX21CS010", "Divya", section="A")
    students = client.get("/api/marks/students-by-section?sem=5&section=a").get_json()
    assert [row["usn"] for row in students] == ["1XX21CS001", "1XX21CS002", "1XX21CS010"]

    subjects = client.get("/api/marks/faculty-subjects?sem=5&section=A").get_json()
    assert [row["subject_code"] for row in subjects] == ["CS501", "CS502L"]


def test_sgpa_updates_cgpa(client, department, as_faculty):
    client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 1, "sgpa": 8.0})
    response = client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 2, "sgpa": "9"})
    assert response.get_json()["cgpa"] == 8.5

    gpa = client.get("/api/marks/1XX21CS001/gpa").get_json()
    assert gpa["cgpa"] == 8.5
    assert [row["semester"] for row in gpa["semesters"]] == [1, 2]


def test_sgpa_resubmission_replaces_semester(client, department, as_faculty):
    client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 1, "sgpa": 6.0})
    client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 2, "sgpa": 8.0})
    response = client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 1, "sgpa": 9.0})
    assert response.get_json()["cgpa"] == 8.5


def test_sgpa_rejects_non_numeric(client, db, department, as_faculty):
    assert client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 1, "sgpa": "abc"}).status_code == 400
    assert client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "semester": 1, "sgpa": 11}).status_code == 400
    assert client.post("/api/marks/saveSgpaCgpa", json={"usn": "1XX21CS001", "sgpa": 8}).status_code == 400
    assert db.execute("SELECT COUNT(*) FROM student_sgpa").fetchone()[0] == 0


def test_oversized_component_is_stored_as_zero(client, db, department, as_faculty):
    payload = {"usn": "1XX21CS001", "semester": 5, "subjects": [{"code": "CS501", "cie1": "1e400", "external": 20}]}
    assert client.post("/api/marks", json=payload).status_code == 200
    assert db.execute("SELECT cie1 FROM marks").fetchone()["cie1"] == 0


def test_reader_role_is_reported(client, department, as_faculty):
    client.post("/api/marks", json=MARKS)
    assert client.get("/api/marks/1XX21CS001").get_json()["role"] == "faculty"

    log_in(
        client,
        Principal(id="1XX21CS001", role=Role.STUDENT, display_name="Asha", email="", semester=5, section="A"),
    )
    assert client.get("/api/marks/1xx21cs001").get_json()["role"] == "student"
