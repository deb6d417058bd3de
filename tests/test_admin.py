import io

from conftest import PASSWORD, add_faculty


def advisors(db):
    return [tuple(row) for row in db.execute("SELECT faculty_id, sem, section FROM class_advisors ORDER BY faculty_id")]


def test_one_advisor_per_class(client, db, department, as_admin):
    assert client.post("/api/admin/assign-ca", json={"faculty_id": "F001", "sem": 5, "section": "A"}).status_code == 200
    assert client.post("/api/admin/assign-ca", json={"faculty_id": "F002", "sem": 5, "section": "A"}).status_code == 200
    assert advisors(db) == [("F002", 5, "A")]

    view = client.get("/api/admin/view-ca?sem=5&section=A").get_json()
    assert view["faculty_id"] == "F002"


def test_advisor_moves_between_classes(client, db, department, as_admin):
    client.post("/api/admin/assign-ca", json={"faculty_id": "F001", "sem": 5, "section": "A"})
    client.post("/api/admin/assign-ca", json={"faculty_id": "F001", "sem": 5, "section": "B"})
    assert advisors(db) == [("F001", 5, "B")]

    empty = client.get("/api/admin/view-ca?sem=5&section=A").get_json()
    assert empty == {"message": "No Class Advisor assigned for this section yet."}
    assert len(client.get("/api/admin/view-all-ca").get_json()) == 1


def test_assign_unknown_advisor(client, department, as_admin):
    response = client.post("/api/admin/assign-ca", json={"faculty_id": "F404", "sem": 5, "section": "A"})
    assert response.status_code == 404


def test_subject_assignment_overwrites(client, db, department, as_admin):
    response = client.post(
        "/api/admin/assign-faculty",
        json={"faculty_id": "F002", "subject_code": "CS501", "section": "A", "sem": 5},
    )
    assert response.status_code == 200

    rows = db.execute("SELECT faculty_id FROM faculty_subject WHERE subject_code = 'CS501' AND section = 'A'").fetchall()
    assert [row["faculty_id"] for row in rows] == ["F002"]

    view = client.get("/api/admin/view-assigned?sem=5&section=A&subject_code=CS501").get_json()
    assert view["faculty_name"] == "Meena Rao"


def test_assign_faculty_can_also_set_advisor(client, db, department, as_admin):
    client.post(
        "/api/admin/assign-faculty",
        json={"faculty_id": "F002", "subject_code": "CS501", "section": "B", "sem": 5, "is_class_advisor": True},
    )
    assert advisors(db) == [("F002", 5, "B")]


def test_assign_faculty_requires_fields(client, department, as_admin):
    assert client.post("/api/admin/assign-faculty", json={"faculty_id": "F001"}).status_code == 400
    response = client.post(
        "/api/admin/assign-faculty",
        json={"faculty_id": "F001", "subject_code": "ZZ100", "section": "A", "sem": 5},
    )
    assert response.status_code == 404


def test_student_records(client, db, department, as_admin):
    new = {"usn": "1xx21cs050", "name": "Farah", "email": "Farah@dept.test", "section": "a", "sem": 5}
    assert client.post("/api/admin/student", json=new).status_code == 400

    assert client.post("/api/admin/student", json={**new, "password": PASSWORD}).status_code == 201
    record = client.get("/api/admin/student/1XX21CS050").get_json()
    assert record["section"] == "A"
    assert record["email"] == "farah@dept.test"
    assert record["isEdit"] is True
    assert "password" not in record

    before = db.execute("SELECT password FROM student WHERE usn = '1XX21CS050'").fetchone()["password"]
    assert client.post("/api/admin/student", json={**new, "name": "Farah K"}).status_code == 200
    row = db.execute("SELECT name, password FROM student WHERE usn = '1XX21CS050'").fetchone()
    assert (row["name"], row["password"]) == ("Farah K", before)

    assert client.delete("/api/admin/student/1XX21CS050").status_code == 200
    assert client.get("/api/admin/student/1XX21CS050").status_code == 404
    assert client.delete("/api/admin/student/1XX21CS050").status_code == 404


def test_faculty_records(client, department, as_admin):
    payload = {"ssn_id": "f010", "name": "Kiran", "password": PASSWORD, "position": "Professor"}
    assert client.post("/api/admin/faculty", json=payload).status_code == 201
    assert client.get("/api/admin/faculty/F010").get_json()["position"] == "Professor"

    listing = client.get("/api/admin/faculty-list").get_json()
    assert [row["ssn_id"] for row in listing] == ["F010", "F002", "F001"]


def test_delete_rejects_unknown_type(client, department, as_admin):
    assert client.delete("/api/admin/course/CS501").status_code == 400


def test_subjects_by_semester(client, department, as_admin):
    client.post("/api/admin/subject", json={"subject_code": "cs601", "subject_name": "Compilers", "semester": 6, "credit": 3})
    client.post("/api/admin/subject", json={"subject_code": "CS601", "subject_name": "Compiler Design", "semester": 6, "credit": 4})

    subjects = client.get("/api/admin/subjects-list?semester=6").get_json()
    assert subjects == [{"subject_code": "CS601", "subject_name": "Compiler Design", "credit": 4}]
    assert client.get("/api/admin/subjects-list").status_code == 400


def test_class_rosters(client, department, as_admin):
    students = client.get("/api/admin/view-students?sem=5&section=A").get_json()
    assert [row["usn"] for row in students] == ["1XX21CS001", "1XX21CS002"]
    assert students[0]["photo"] is None
    assert "photo_data" not in students[0]

    empty = client.get("/api/admin/view-students?sem=7&section=A").get_json()
    assert empty == {"message": "No students found for this section."}
    assert client.get("/api/admin/view-students?sem=5").status_code == 400


def test_staff_directory_lists_head_first(client, db, department):
    add_faculty(db, "F003", "Aditi")
    staff = client.get("/api/staff").get_json()
    assert [row["ssn_id"] for row in staff] == ["F002", "F003", "F001"]
    assert staff[1]["initial"] == "A"
    assert staff[0]["photo"] is None


def test_profile_photo_becomes_data_uri(client, department, as_faculty):
    response = client.post(
        "/api/profile-photo",
        data={"photo": (io.BytesIO(b"\x89PNG"), "me.png")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200

    staff = {row["ssn_id"]: row for row in client.get("/api/staff").get_json()}
    assert staff["F001"]["photo"] == "data:image/png;base64,iVBORw=="

    profile = client.get("/api/profile").get_json()
    assert profile["photoUrl"].startswith("data:image/png;base64,")
    assert "password" not in profile
