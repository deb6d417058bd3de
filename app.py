from __future__ import annotations

import base64
import io
import logging
import os
import re
import secrets
import sqlite3
import time
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from typing import Any

from flask import (
    Flask,
    abort,
    g,
    jsonify,
    request,
    send_file,
    session,
)
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

import mailer
from academics import (
    ATTENDANCE_THRESHOLD,
    PASS,
    FAIL,
    alert_on_cooldown,
    attendance_percentage,
    coerce_number,
    compose_shortage_alert,
    compute_cgpa,
    cumulative_monthly,
    evaluate_marks_row,
    overall_attendance,
    shortage_subjects,
    subject_summary,
)
from access import Denied, Principal, Role, StudentCredential, authorize, principal_identifier, resolve_student
from blobs import get_blob, put_blob

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get("DATABASE_PATH", os.path.join(BASE_DIR, "department.db"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORTAL_URL = os.environ.get("PORTAL_URL", "http://localhost:5050/")

MAX_UPLOAD_BYTES = 8 * 1024 * 1024
SESSION_LIFETIME = timedelta(days=7)
OTP_TTL_SECONDS = 5 * 60

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
NOTE_EXTENSIONS = {".pdf", ".doc", ".docx", ".ppt", ".pptx", ".txt", ".png", ".jpg", ".jpeg"}
ATTACHMENT_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".doc", ".docx"}
TIMETABLE_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg"}

ANNOUNCEMENT_TYPES = ["Placement", "Result", "Events", "Alerts", "General"]
ATTENDANCE_STATUSES = {"present": "Present", "absent": "Absent"}

PEOPLE_TABLES = {
    "student": ("student", "usn"),
    "faculty": ("faculty", "ssn_id"),
}

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-change-me")
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
app.config["DATABASE_PATH"] = DB_PATH
app.config["PERMANENT_SESSION_LIFETIME"] = SESSION_LIFETIME
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE_PATH"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


@app.teardown_appcontext
def close_db(_error: Any) -> None:
    db = g.pop("db", None)
    if db is not None:
        db.close()


def seed_default_admin(db: sqlite3.Connection) -> None:
    email = os.environ.get("ADMIN_EMAIL", "").strip().lower()
    password = os.environ.get("ADMIN_PASSWORD", "")
    if not email or not password:
        return

    cursor = db.execute(
        "INSERT OR IGNORE INTO admins (name, email, password) VALUES (?, ?, ?)",
        (os.environ.get("ADMIN_NAME", "Department Admin"), email, generate_password_hash(password)),
    )
    if cursor.rowcount:
        logger.info("Seeded default admin account %s", email)


def init_db() -> None:
    db = get_db()
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS admins (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            password TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS student (
            usn TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            password TEXT NOT NULL,
            section TEXT NOT NULL,
            sem INTEGER NOT NULL,
            phone TEXT,
            join_year INTEGER,
            photo_data BLOB,
            photo_type TEXT
        );

        CREATE TABLE IF NOT EXISTS faculty (
            ssn_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            password TEXT NOT NULL,
            phone TEXT,
            position TEXT,
            photo_data BLOB,
            photo_type TEXT
        );

        CREATE TABLE IF NOT EXISTS subjects (
            subject_code TEXT PRIMARY KEY,
            subject_name TEXT NOT NULL,
            semester INTEGER NOT NULL,
            credit NUMERIC NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS faculty_subject (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            faculty_id TEXT NOT NULL,
            faculty_name TEXT NOT NULL,
            subject_code TEXT NOT NULL,
            section TEXT NOT NULL,
            sem INTEGER NOT NULL,
            UNIQUE (subject_code, section),
            FOREIGN KEY (faculty_id) REFERENCES faculty(ssn_id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS class_advisors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            faculty_id TEXT NOT NULL UNIQUE,
            faculty_name TEXT NOT NULL,
            sem INTEGER NOT NULL,
            section TEXT NOT NULL,
            UNIQUE (sem, section),
            FOREIGN KEY (faculty_id) REFERENCES faculty(ssn_id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS attendance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            usn TEXT NOT NULL,
            subject_code TEXT NOT NULL,
            date TEXT NOT NULL,
            hours NUMERIC NOT NULL DEFAULT 1,
            status TEXT NOT NULL CHECK(status IN ('Present', 'Absent')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (usn) REFERENCES student(usn) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS attendance_alerts (
            usn TEXT PRIMARY KEY,
            last_sent TEXT NOT NULL,
            FOREIGN KEY (usn) REFERENCES student(usn) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS marks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            usn TEXT NOT NULL,
            semester INTEGER NOT NULL,
            subject_code TEXT NOT NULL,
            cie1 NUMERIC NOT NULL DEFAULT 0,
            cie2 NUMERIC NOT NULL DEFAULT 0,
            lab NUMERIC NOT NULL DEFAULT 0,
            assignment NUMERIC NOT NULL DEFAULT 0,
            external NUMERIC NOT NULL DEFAULT 0,
            is_lab INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (usn, semester, subject_code),
            FOREIGN KEY (usn) REFERENCES student(usn) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS student_sgpa (
            usn TEXT NOT NULL,
            semester INTEGER NOT NULL,
            sgpa NUMERIC NOT NULL DEFAULT 0,
            cgpa NUMERIC,
            PRIMARY KEY (usn, semester),
            FOREIGN KEY (usn) REFERENCES student(usn) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS announcements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            faculty_id TEXT NOT NULL,
            author_name TEXT,
            type TEXT NOT NULL DEFAULT 'General',
            file_name TEXT,
            file_type TEXT,
            file_data BLOB,
            is_marquee INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            semester INTEGER NOT NULL,
            section TEXT NOT NULL,
            subject_code TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_type TEXT,
            file_data BLOB NOT NULL,
            uploaded_by TEXT NOT NULL,
            uploaded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS note_views (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            usn TEXT NOT NULL,
            note_id INTEGER NOT NULL,
            viewed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (usn, note_id),
            FOREIGN KEY (note_id) REFERENCES notes(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS timetable (
            sem INTEGER NOT NULL,
            section TEXT NOT NULL,
            file_name TEXT,
            file_type TEXT,
            file_data BLOB NOT NULL,
            uploaded_by TEXT,
            uploaded_at TEXT,
            PRIMARY KEY (sem, section)
        );

        CREATE TABLE IF NOT EXISTS admin_otps (
            email TEXT PRIMARY KEY,
            otp TEXT NOT NULL,
            expires_at REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_student_class ON student(sem, section);
        CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance(usn, subject_code, date);
        CREATE INDEX IF NOT EXISTS idx_marks_class ON marks(semester, subject_code);
        CREATE INDEX IF NOT EXISTS idx_notes_class ON notes(semester, section, subject_code);
        CREATE INDEX IF NOT EXISTS idx_announcement_created ON announcements(created_at DESC);
        """
    )

    seed_default_admin(db)
    db.commit()
    logger.info("Database ready at %s", app.config["DATABASE_PATH"])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def request_data() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def text_value(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def clean_usn(value: Any) -> str:
    return text_value(value).upper()


def clean_section(value: Any) -> str:
    return text_value(value).upper()


def int_value(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "on", "yes"}
    return bool(value)


def iso_date(value: Any) -> str | None:
    try:
        return date.fromisoformat(text_value(value)).isoformat()
    except ValueError:
        return None


def arg(*names: str) -> str:
    for name in names:
        value = request.args.get(name, "").strip()
        if value:
            return value
    return ""


def class_args() -> tuple[int, str]:
    semester = int_value(arg("sem", "semester"))
    section = clean_section(arg("section"))
    if not semester or not section:
        abort(400, description="Semester and Section required")
    return semester, section


def rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(row) for row in rows]


def data_uri(blob: bytes | None, mime: str | None) -> str | None:
    if not blob or not mime:
        return None
    return f"data:{mime};base64,{base64.b64encode(bytes(blob)).decode('ascii')}"


def clean_name(name: str, fallback: str = "download") -> str:
    safe_name = re.sub(r"[^a-zA-Z0-9._-]+", "-", name).strip("-")
    return safe_name or fallback


def send_blob(file_name: str, content: bytes, mime: str | None, as_attachment: bool = True):
    return send_file(
        io.BytesIO(content),
        mimetype=mime or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=clean_name(file_name),
    )


def read_uploaded_file(field_name: str, allowed_extensions: set[str]) -> tuple[str | None, bytes | None, str | None, str | None]:
    uploaded = request.files.get(field_name)
    if not uploaded or not uploaded.filename:
        return None, None, None, None

    filename = secure_filename(uploaded.filename)
    ext = os.path.splitext(filename)[1].lower()
    if ext not in allowed_extensions:
        return None, None, None, "Invalid file format. Please upload the supported format only."

    blob = uploaded.read()
    if not blob:
        return None, None, None, "Uploaded file is empty."

    if len(blob) > MAX_UPLOAD_BYTES:
        return None, None, None, f"File too large. Max size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB."

    mime = uploaded.mimetype or "application/octet-stream"
    return filename, blob, mime, None


def current_principal() -> Principal | None:
    if "principal" not in g:
        g.principal = Principal.from_session(session.get("principal"))
    return g.principal


def start_session(principal: Principal) -> None:
    session.clear()
    session.permanent = True
    session["principal"] = principal.to_session()
    g.principal = principal


def role_required(*roles: Role):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            try:
                g.principal = authorize(session.get("principal"), *roles)
            except Denied as exc:
                abort(exc.status, description=exc.message)
            return view(*args, **kwargs)

        return wrapped

    return decorator


login_required = role_required(Role.STUDENT, Role.FACULTY, Role.ADMIN)


def student_credential(explicit_usn: Any = None) -> StudentCredential:
    if explicit_usn is None:
        explicit_usn = request.args.get("usn")
    try:
        return resolve_student(session.get("principal"), text_value(explicit_usn))
    except Denied as exc:
        abort(exc.status, description=exc.message)


def students_in_section(db: sqlite3.Connection, semester: int, section: str) -> list[sqlite3.Row]:
    return db.execute(
        "SELECT usn, name FROM student WHERE sem = ? AND section = ? ORDER BY usn",
        (semester, section),
    ).fetchall()


def faculty_subjects(db: sqlite3.Connection, ssn_id: str, semester: int, section: str) -> list[sqlite3.Row]:
    return db.execute(
        """
        SELECT s.subject_code, s.subject_name
        FROM faculty_subject fs
        JOIN subjects s ON s.subject_code = fs.subject_code
        WHERE fs.faculty_id = ? AND fs.sem = ? AND fs.section = ?
        ORDER BY s.subject_code
        """,
        (ssn_id, semester, section),
    ).fetchall()


def is_assigned(db: sqlite3.Connection, ssn_id: str, subject_code: str, semester: int, section: str) -> bool:
    row = db.execute(
        """
        SELECT 1 FROM faculty_subject
        WHERE faculty_id = ? AND subject_code = ? AND sem = ? AND section = ?
        """,
        (ssn_id, subject_code, semester, section),
    ).fetchone()
    return row is not None


def class_advisor_for(db: sqlite3.Connection, semester: int, section: str) -> sqlite3.Row | None:
    return db.execute(
        "SELECT faculty_id, faculty_name, sem, section FROM class_advisors WHERE sem = ? AND section = ?",
        (semester, section),
    ).fetchone()


def advised_class(db: sqlite3.Connection, ssn_id: str) -> sqlite3.Row | None:
    return db.execute(
        "SELECT sem, section FROM class_advisors WHERE faculty_id = ?",
        (ssn_id,),
    ).fetchone()


def set_class_advisor(db: sqlite3.Connection, faculty: sqlite3.Row, semester: int, section: str) -> None:
    # One advisor per class and one class per advisor.
    db.execute(
        "DELETE FROM class_advisors WHERE (sem = ? AND section = ?) OR faculty_id = ?",
        (semester, section, faculty["ssn_id"]),
    )
    db.execute(
        "INSERT INTO class_advisors (faculty_id, faculty_name, sem, section) VALUES (?, ?, ?, ?)",
        (faculty["ssn_id"], faculty["name"], semester, section),
    )


def attendance_summary(db: sqlite3.Connection, usn: str) -> list[dict[str, Any]]:
    rows = db.execute(
        """
        SELECT
            a.subject_code,
            s.subject_name,
            s.semester,
            SUM(a.hours) AS total_classes,
            SUM(CASE WHEN a.status = 'Present' THEN a.hours ELSE 0 END) AS attended_classes
        FROM attendance a
        LEFT JOIN subjects s ON s.subject_code = a.subject_code
        WHERE a.usn = ?
        GROUP BY a.subject_code
        ORDER BY a.subject_code
        """,
        (usn,),
    ).fetchall()
    return subject_summary(rows)


def issue_admin_otp(db: sqlite3.Connection, email: str) -> str:
    now = time.time()
    otp = str(secrets.randbelow(900000) + 100000)
    with db:
        db.execute("DELETE FROM admin_otps WHERE expires_at <= ?", (now,))
        db.execute(
            """
            INSERT INTO admin_otps (email, otp, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(email) DO UPDATE SET otp = excluded.otp, expires_at = excluded.expires_at
            """,
            (email, otp, now + OTP_TTL_SECONDS),
        )
    return otp


def discard_admin_otp(db: sqlite3.Connection, email: str) -> None:
    with db:
        db.execute("DELETE FROM admin_otps WHERE email = ?", (email,))


def consume_admin_otp(db: sqlite3.Connection, email: str, otp: str) -> str | None:
    now = time.time()
    # Check and removal happen in one statement so a code verifies at most once.
    with db:
        cursor = db.execute(
            "DELETE FROM admin_otps WHERE email = ? AND otp = ? AND expires_at > ?",
            (email, otp, now),
        )
    if cursor.rowcount == 1:
        return None

    row = db.execute("SELECT expires_at FROM admin_otps WHERE email = ?", (email,)).fetchone()
    if not row:
        return "No OTP request found"
    if row["expires_at"] <= now:
        discard_admin_otp(db, email)
        return "OTP expired"
    return "Invalid OTP"


def notify_marks_uploaded(student: sqlite3.Row) -> None:
    if not student["email"]:
        logger.info("Marks saved for %s; no email on record", student["usn"])
        return

    ok, detail = mailer.send_email(
        student["email"],
        "Marks Uploaded",
        (
            f"Dear {student['name']},\n\n"
            "Your marks have been uploaded successfully.\n"
            "Please log in to the student portal to view your detailed results.\n\n"
            f"{PORTAL_URL}\n\n"
            "Regards,\nCSE Department"
        ),
    )
    if ok:
        logger.info("Marks notification sent to %s", student["usn"])
    else:
        logger.warning("Marks notification for %s not sent: %s", student["usn"], detail)


@app.after_request
def disable_api_cache(response):
    if request.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"
    return response


@app.route("/api/health")
def health_check():
    return jsonify({"status": "ok"})


############################## SESSIONS ##############################


@app.route("/api/login", methods=["POST"])
def login():
    data = request_data()
    identifier = text_value(data.get("identifier") or data.get("usn") or data.get("ssn_id"))
    password = data.get("password") or ""
    role_name = text_value(data.get("role")).lower()

    if not identifier or not password:
        abort(400, description="Please enter your ID/email and password.")

    try:
        role = Role(role_name)
    except ValueError:
        abort(400, description="Select a student or faculty account.")
    if role is Role.ADMIN:
        abort(400, description="Admins sign in through the admin login.")

    db = get_db()
    table, key = PEOPLE_TABLES[role.value]
    user = db.execute(
        f"SELECT * FROM {table} WHERE UPPER({key}) = ? OR LOWER(COALESCE(email, '')) = ?",
        (identifier.upper(), identifier.lower()),
    ).fetchone()

    if not user or not check_password_hash(user["password"], password):
        abort(401, description="Invalid credentials.")

    if role is Role.STUDENT:
        principal = Principal(
            id=user["usn"],
            role=role,
            display_name=user["name"],
            email=user["email"] or "",
            semester=user["sem"],
            section=user["section"],
        )
    else:
        principal = Principal(
            id=user["ssn_id"],
            role=role,
            display_name=user["name"],
            email=user["email"] or "",
        )

    start_session(principal)
    logger.info("%s %s logged in", role.value, principal.id)
    return jsonify({"success": True, "user": principal.to_session()})


@app.route("/api/admin-login", methods=["POST"])
def admin_login():
    data = request_data()
    email = text_value(data.get("email")).lower()
    password = data.get("password") or ""
    if not email or not password:
        abort(400, description="Email and password are required")

    db = get_db()
    admin = db.execute("SELECT * FROM admins WHERE email = ?", (email,)).fetchone()
    if not admin or not check_password_hash(admin["password"], password):
        abort(401, description="Invalid email or password")

    otp = issue_admin_otp(db, email)
    ok, detail = mailer.send_email(
        email,
        "Admin Login OTP Verification",
        f"Your OTP is {otp}. It expires in {OTP_TTL_SECONDS // 60} minutes.",
        html=(
            "<h3>Admin Login Verification</h3>"
            f"<p>Your OTP is <b>{otp}</b>. It expires in {OTP_TTL_SECONDS // 60} minutes.</p>"
        ),
    )
    if not ok:
        discard_admin_otp(db, email)
        logger.warning("Admin OTP for %s not delivered: %s", email, detail)
        return jsonify({"success": False, "message": "Could not send OTP email"}), 502

    return jsonify({"success": True, "message": "OTP sent to your registered email"})


@app.route("/api/admin-verify-otp", methods=["POST"])
def admin_verify_otp():
    data = request_data()
    email = text_value(data.get("email")).lower()
    otp = text_value(data.get("otp"))
    if not email or not otp:
        abort(400, description="Email and OTP are required")

    db = get_db()
    error = consume_admin_otp(db, email, otp)
    if error:
        return jsonify({"success": False, "message": error}), 400

    admin = db.execute("SELECT id, name, email FROM admins WHERE email = ?", (email,)).fetchone()
    if not admin:
        abort(401, description="Invalid email or password")

    start_session(Principal(id=str(admin["id"]), role=Role.ADMIN, display_name=admin["name"], email=admin["email"]))
    logger.info("Admin %s verified OTP", email)
    return jsonify({"success": True, "message": "OTP verified successfully"})


@app.route("/api/current-admin")
@role_required(Role.ADMIN)
def current_admin():
    principal = current_principal()
    return jsonify({"email": principal.email, "name": principal.display_name, "verified": True})


@app.route("/api/session")
def session_info():
    principal = current_principal()
    if principal is None:
        return jsonify({"loggedIn": False})
    return jsonify({"loggedIn": True, "user": principal.to_session()})


@app.route("/logout", methods=["POST"])
@app.route("/api/logout", methods=["POST"])
def logout():
    session.clear()
    g.pop("principal", None)
    return jsonify({"success": True, "message": "You have been logged out."})


############################## PROFILE & STAFF ##############################


@app.route("/api/profile")
@login_required
def profile():
    principal = current_principal()
    db = get_db()

    if principal.role is Role.ADMIN:
        row = db.execute("SELECT id, name, email, created_at FROM admins WHERE email = ?", (principal.email,)).fetchone()
        if not row:
            abort(404, description="User not found")
        return jsonify({"role": principal.role.value, **dict(row), "photoUrl": None})

    table, key = PEOPLE_TABLES[principal.role.value]
    row = db.execute(f"SELECT * FROM {table} WHERE {key} = ?", (principal.id,)).fetchone()
    if not row:
        abort(404, description="User not found")

    user = dict(row)
    user.pop("password", None)
    photo = user.pop("photo_data", None)
    return jsonify({"role": principal.role.value, **user, "photoUrl": data_uri(photo, user.get("photo_type"))})


@app.route("/api/profile-photo", methods=["POST"])
@role_required(Role.STUDENT, Role.FACULTY)
def upload_profile_photo():
    principal = current_principal()
    _name, blob, mime, error = read_uploaded_file("photo", IMAGE_EXTENSIONS)
    if error:
        abort(400, description=error)
    if not blob:
        abort(400, description="No file uploaded")

    db = get_db()
    kind = "student_photo" if principal.role is Role.STUDENT else "faculty_photo"
    if not put_blob(db, kind, principal.id, blob, mime):
        abort(404, description="User not found")
    db.commit()
    return jsonify({"success": True})


@app.route("/api/staff")
def staff_directory():
    rows = get_db().execute(
        """
        SELECT ssn_id, name, position, photo_data, photo_type
        FROM faculty
        ORDER BY CASE WHEN position LIKE '%Head of Department%' THEN 0 ELSE 1 END, name ASC
        """
    ).fetchall()

    staff = []
    for row in rows:
        name = (row["name"] or "").strip()
        staff.append(
            {
                "ssn_id": row["ssn_id"],
                "name": row["name"],
                "position": row["position"],
                "photo": data_uri(row["photo_data"], row["photo_type"]),
                "initial": name[:1].upper() or "?",
            }
        )
    return jsonify(staff)


############################## ADMIN ##############################


@app.route("/api/admin/subjects-list")
@role_required(Role.ADMIN)
def subjects_list():
    semester = int_value(arg("semester", "sem"))
    if not semester:
        abort(400, description="Semester query parameter is required.")
    rows = get_db().execute(
        "SELECT subject_code, subject_name, credit FROM subjects WHERE semester = ? ORDER BY subject_code",
        (semester,),
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/admin/subject", methods=["POST"])
@role_required(Role.ADMIN)
def save_subject():
    data = request_data()
    subject_code = text_value(data.get("subject_code")).upper()
    subject_name = text_value(data.get("subject_name"))
    semester = int_value(data.get("semester"))
    credit = coerce_number(data.get("credit"))

    if not subject_code or not subject_name or not semester:
        abort(400, description="Subject code, name and semester are required")

    db = get_db()
    db.execute(
        """
        INSERT INTO subjects (subject_code, subject_name, semester, credit) VALUES (?, ?, ?, ?)
        ON CONFLICT(subject_code) DO UPDATE SET
            subject_name = excluded.subject_name,
            semester = excluded.semester,
            credit = excluded.credit
        """,
        (subject_code, subject_name, semester, credit),
    )
    db.commit()
    return jsonify({"message": "Subject saved successfully"})


@app.route("/api/admin/faculty-list")
@role_required(Role.ADMIN)
def faculty_list():
    rows = get_db().execute("SELECT ssn_id, name FROM faculty ORDER BY name").fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/admin/student", methods=["POST"])
@role_required(Role.ADMIN)
def save_student():
    data = request_data()
    usn = clean_usn(data.get("usn"))
    name = text_value(data.get("name"))
    email = text_value(data.get("email")).lower()
    password = data.get("password") or ""
    section = clean_section(data.get("section"))
    semester = int_value(data.get("sem"))
    phone = text_value(data.get("phone"))
    join_year = int_value(data.get("join_year"))

    if not usn or not name or not section or not semester:
        abort(400, description="USN, name, section and semester are required")

    db = get_db()
    existing = db.execute("SELECT usn FROM student WHERE usn = ?", (usn,)).fetchone()
    if existing:
        if password:
            db.execute(
                """
                UPDATE student SET name = ?, email = ?, password = ?, section = ?, sem = ?, phone = ?, join_year = ?
                WHERE usn = ?
                """,
                (name, email, generate_password_hash(password), section, semester, phone, join_year, usn),
            )
        else:
            db.execute(
                "UPDATE student SET name = ?, email = ?, section = ?, sem = ?, phone = ?, join_year = ? WHERE usn = ?",
                (name, email, section, semester, phone, join_year, usn),
            )
        db.commit()
        return jsonify({"message": "Student updated successfully"})

    if not password:
        abort(400, description="Password is required for new students")

    db.execute(
        """
        INSERT INTO student (usn, name, email, password, section, sem, phone, join_year)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (usn, name, email, generate_password_hash(password), section, semester, phone, join_year),
    )
    db.commit()
    return jsonify({"message": "Student added successfully"}), 201


@app.route("/api/admin/student/<usn>")
@role_required(Role.ADMIN)
def get_student(usn: str):
    row = get_db().execute(
        "SELECT usn, name, email, section, sem, phone, join_year FROM student WHERE usn = ?",
        (clean_usn(usn),),
    ).fetchone()
    if not row:
        abort(404, description="Student not found")
    return jsonify({**dict(row), "isEdit": True})


@app.route("/api/admin/faculty", methods=["POST"])
@role_required(Role.ADMIN)
def save_faculty():
    data = request_data()
    ssn_id = text_value(data.get("ssn_id")).upper()
    name = text_value(data.get("name"))
    email = text_value(data.get("email")).lower()
    password = data.get("password") or ""
    phone = text_value(data.get("phone"))
    position = text_value(data.get("position"))

    if not ssn_id or not name:
        abort(400, description="SSN ID and name are required")

    db = get_db()
    existing = db.execute("SELECT ssn_id FROM faculty WHERE ssn_id = ?", (ssn_id,)).fetchone()
    if existing:
        if password:
            db.execute(
                "UPDATE faculty SET name = ?, email = ?, password = ?, phone = ?, position = ? WHERE ssn_id = ?",
                (name, email, generate_password_hash(password), phone, position, ssn_id),
            )
        else:
            db.execute(
                "UPDATE faculty SET name = ?, email = ?, phone = ?, position = ? WHERE ssn_id = ?",
                (name, email, phone, position, ssn_id),
            )
        db.commit()
        return jsonify({"message": "Faculty updated successfully"})

    if not password:
        abort(400, description="Password is required for new faculty")

    db.execute(
        "INSERT INTO faculty (ssn_id, name, email, password, phone, position) VALUES (?, ?, ?, ?, ?, ?)",
        (ssn_id, name, email, generate_password_hash(password), phone, position),
    )
    db.commit()
    return jsonify({"message": "Faculty added successfully"}), 201


@app.route("/api/admin/faculty/<ssn_id>")
@role_required(Role.ADMIN)
def get_faculty(ssn_id: str):
    row = get_db().execute(
        "SELECT ssn_id, name, email, phone, position FROM faculty WHERE ssn_id = ?",
        (ssn_id.strip().upper(),),
    ).fetchone()
    if not row:
        abort(404, description="Faculty not found")
    return jsonify({**dict(row), "isEdit": True})


@app.route("/api/admin/<kind>/<record_id>", methods=["DELETE"])
@role_required(Role.ADMIN)
def delete_person(kind: str, record_id: str):
    if kind not in PEOPLE_TABLES:
        abort(400, description="Invalid type")

    table, key = PEOPLE_TABLES[kind]
    db = get_db()
    cursor = db.execute(f"DELETE FROM {table} WHERE {key} = ?", (record_id.strip().upper(),))
    if cursor.rowcount == 0:
        abort(404, description=f"{kind} not found")
    db.commit()
    return jsonify({"message": f"{kind} deleted successfully"})


@app.route("/api/admin/assign-faculty", methods=["POST"])
@role_required(Role.ADMIN)
def assign_faculty():
    data = request_data()
    faculty_id = text_value(data.get("faculty_id")).upper()
    subject_code = text_value(data.get("subject_code")).upper()
    section = clean_section(data.get("section"))
    semester = int_value(data.get("sem"))
    make_advisor = truthy(data.get("is_class_advisor"))

    if not faculty_id or not subject_code or not section or not semester:
        abort(400, description="All fields are required")

    db = get_db()
    faculty = db.execute("SELECT ssn_id, name FROM faculty WHERE ssn_id = ?", (faculty_id,)).fetchone()
    if not faculty:
        abort(404, description="Faculty not found")
    subject = db.execute("SELECT subject_code FROM subjects WHERE subject_code = ?", (subject_code,)).fetchone()
    if not subject:
        abort(404, description="Subject not found")

    with db:
        db.execute(
            """
            INSERT INTO faculty_subject (faculty_id, faculty_name, subject_code, section, sem)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(subject_code, section) DO UPDATE SET
                faculty_id = excluded.faculty_id,
                faculty_name = excluded.faculty_name,
                sem = excluded.sem
            """,
            (faculty["ssn_id"], faculty["name"], subject_code, section, semester),
        )
        if make_advisor:
            set_class_advisor(db, faculty, semester, section)

    return jsonify({"message": "Faculty assignment updated successfully!"})


@app.route("/api/admin/assign-ca", methods=["POST"])
@role_required(Role.ADMIN)
def assign_class_advisor():
    data = request_data()
    faculty_id = text_value(data.get("faculty_id")).upper()
    section = clean_section(data.get("section"))
    semester = int_value(data.get("sem"))

    if not faculty_id or not section or not semester:
        abort(400, description="All fields are required")

    db = get_db()
    faculty = db.execute("SELECT ssn_id, name FROM faculty WHERE ssn_id = ?", (faculty_id,)).fetchone()
    if not faculty:
        abort(404, description="Faculty not found")

    with db:
        set_class_advisor(db, faculty, semester, section)

    logger.info("Class advisor for sem %s section %s is now %s", semester, section, faculty_id)
    return jsonify({"message": "Class Advisor assigned successfully!"})


@app.route("/api/admin/view-ca")
@role_required(Role.ADMIN)
def view_class_advisor():
    semester, section = class_args()
    row = class_advisor_for(get_db(), semester, section)
    if not row:
        return jsonify({"message": "No Class Advisor assigned for this section yet."})
    return jsonify(dict(row))


@app.route("/api/admin/view-all-ca")
@role_required(Role.ADMIN)
def view_all_class_advisors():
    rows = get_db().execute(
        "SELECT faculty_id, faculty_name, sem, section FROM class_advisors ORDER BY sem, section"
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/admin/view-assigned")
@role_required(Role.ADMIN)
def view_assigned():
    semester, section = class_args()
    subject_code = arg("subject_code").upper()
    if not subject_code:
        abort(400, description="Semester, section, and subject are required")

    row = get_db().execute(
        """
        SELECT faculty_id, faculty_name, subject_code, section, sem
        FROM faculty_subject
        WHERE sem = ? AND section = ? AND subject_code = ?
        """,
        (semester, section, subject_code),
    ).fetchone()
    if not row:
        return jsonify({"message": "No faculty assigned for this subject yet."})
    return jsonify(dict(row))


@app.route("/api/admin/view-students")
@role_required(Role.ADMIN)
def view_students():
    semester, section = class_args()
    rows = get_db().execute(
        """
        SELECT usn, name, email, section, sem, phone, photo_data, photo_type
        FROM student
        WHERE sem = ? AND section = ?
        ORDER BY usn
        """,
        (semester, section),
    ).fetchall()
    if not rows:
        return jsonify({"message": "No students found for this section."})

    students = []
    for row in rows:
        student = dict(row)
        student["photo"] = data_uri(student.pop("photo_data"), student.pop("photo_type"))
        students.append(student)
    return jsonify(students)


@app.route("/api/admin/view-faculty")
@role_required(Role.ADMIN)
def view_faculty():
    rows = get_db().execute(
        "SELECT ssn_id, name, email, position, phone, photo_data, photo_type FROM faculty ORDER BY name"
    ).fetchall()
    if not rows:
        return jsonify({"message": "No faculty records found."})

    faculty = []
    for row in rows:
        member = dict(row)
        member["photo"] = data_uri(member.pop("photo_data"), member.pop("photo_type"))
        faculty.append(member)
    return jsonify(faculty)


############################## ROSTER ##############################


@app.route("/api/marks/faculty-subjects")
@app.route("/api/attendance/faculty-subjects")
@app.route("/api/notes/subjects")
@role_required(Role.FACULTY)
def assigned_subjects():
    semester, section = class_args()
    rows = faculty_subjects(get_db(), current_principal().id, semester, section)
    return jsonify(rows_to_dicts(rows))


@app.route("/api/marks/students")
@app.route("/api/marks/students-by-section")
@role_required(Role.FACULTY, Role.ADMIN)
def section_students():
    semester, section = class_args()
    return jsonify(rows_to_dicts(students_in_section(get_db(), semester, section)))


############################## MARKS ##############################


@app.route("/api/marks", methods=["POST"])
@role_required(Role.FACULTY)
def upsert_marks():
    data = request_data()
    usn = clean_usn(data.get("usn"))
    semester = int_value(data.get("semester"))
    subjects = data.get("subjects")

    if not usn or not semester or not isinstance(subjects, list) or not subjects:
        abort(400, description="Invalid request data")

    db = get_db()
    student = db.execute("SELECT usn, name, email FROM student WHERE usn = ?", (usn,)).fetchone()
    if not student:
        abort(404, description="Student not found")

    rows = []
    for sub in subjects:
        if not isinstance(sub, dict):
            abort(400, description="Invalid request data")
        code = text_value(sub.get("code") or sub.get("subject_code")).upper()
        if not code:
            abort(400, description="Every subject needs a code")
        rows.append(
            (
                usn,
                semester,
                code,
                coerce_number(sub.get("cie1")),
                coerce_number(sub.get("cie2")),
                coerce_number(sub.get("lab")),
                coerce_number(sub.get("assignment")),
                coerce_number(sub.get("external")),
                1 if truthy(sub.get("isLab", sub.get("is_lab"))) else 0,
            )
        )

    codes = sorted({row[2] for row in rows})
    known = db.execute(
        f"SELECT subject_code FROM subjects WHERE subject_code IN ({', '.join('?' for _ in codes)})",
        codes,
    ).fetchall()
    unknown = set(codes) - {row["subject_code"] for row in known}
    if unknown:
        abort(400, description=f"Unknown subject code: {', '.join(sorted(unknown))}")

    with db:
        db.executemany(
            """
            INSERT INTO marks (usn, semester, subject_code, cie1, cie2, lab, assignment, external, is_lab)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(usn, semester, subject_code) DO UPDATE SET
                cie1 = excluded.cie1,
                cie2 = excluded.cie2,
                lab = excluded.lab,
                assignment = excluded.assignment,
                external = excluded.external,
                is_lab = excluded.is_lab,
                updated_at = CURRENT_TIMESTAMP
            """,
            rows,
        )

    notify_marks_uploaded(student)
    return jsonify({"message": "Marks saved successfully", "subjects": len(rows)})


@app.route("/api/marks/report")
@role_required(Role.FACULTY)
def marks_report():
    semester, section = class_args()
    subject_code = arg("subject", "subject_code").upper()
    result_filter = arg("filter").upper()
    if not subject_code:
        abort(400, description="Semester, Section, and Subject required")

    rows = get_db().execute(
        """
        SELECT st.usn, st.name, m.cie1, m.cie2, m.lab, m.assignment, m.external, m.is_lab
        FROM marks m
        JOIN student st ON st.usn = m.usn
        WHERE m.semester = ? AND st.section = ? AND m.subject_code = ?
        ORDER BY st.usn
        """,
        (semester, section, subject_code),
    ).fetchall()

    report = [evaluate_marks_row(row) for row in rows]
    if result_filter in {PASS, FAIL}:
        report = [row for row in report if row["result"] == result_filter]
    return jsonify(report)


@app.route("/api/marks/saveSgpaCgpa", methods=["POST"])
@role_required(Role.FACULTY, Role.ADMIN)
def save_sgpa_cgpa():
    data = request_data()
    usn = clean_usn(data.get("usn"))
    if not usn or data.get("semester") in (None, "") or data.get("sgpa") in (None, ""):
        abort(400, description="Missing data")

    semester = int_value(data.get("semester"))
    try:
        sgpa = float(data.get("sgpa"))
    except (TypeError, ValueError):
        sgpa = None
    if semester is None or semester < 1 or sgpa is None or not 0 <= sgpa <= 10:
        abort(400, description="Invalid SGPA or semester")

    db = get_db()
    if not db.execute("SELECT 1 FROM student WHERE usn = ?", (usn,)).fetchone():
        abort(404, description="Student not found")

    # Semester 0 is the rolling CGPA row.
    with db:
        db.execute(
            """
            INSERT INTO student_sgpa (usn, semester, sgpa) VALUES (?, ?, ?)
            ON CONFLICT(usn, semester) DO UPDATE SET sgpa = excluded.sgpa
            """,
            (usn, semester, sgpa),
        )
        values = [
            row["sgpa"]
            for row in db.execute(
                "SELECT sgpa FROM student_sgpa WHERE usn = ? AND semester > 0",
                (usn,),
            ).fetchall()
        ]
        cgpa = compute_cgpa(values)
        db.execute(
            """
            INSERT INTO student_sgpa (usn, semester, sgpa, cgpa) VALUES (?, 0, 0, ?)
            ON CONFLICT(usn, semester) DO UPDATE SET cgpa = excluded.cgpa
            """,
            (usn, cgpa),
        )

    return jsonify({"message": "SGPA & CGPA saved successfully", "cgpa": cgpa})


def record_viewer(usn: str) -> str:
    principal = current_principal()
    if principal is not None and principal.role in (Role.FACULTY, Role.ADMIN):
        return principal.role.value

    credential = student_credential(usn)
    if credential.usn != usn:
        abort(403, description="Students can only view their own records")
    return credential.role_label


@app.route("/api/marks/<usn>")
def student_marks(usn: str):
    usn = clean_usn(usn)
    viewer = record_viewer(usn)
    semester = int_value(arg("semester"))

    query = """
        SELECT m.subject_code, s.subject_name, m.semester, s.credit,
               m.cie1, m.cie2, m.lab, m.assignment, m.external, m.is_lab
        FROM marks m
        JOIN subjects s ON s.subject_code = m.subject_code
        WHERE m.usn = ?
    """
    params: list[Any] = [usn]
    if semester:
        query += " AND m.semester = ?"
        params.append(semester)
    query += " ORDER BY m.semester, m.subject_code"

    rows = get_db().execute(query, params).fetchall()
    if not rows:
        abort(404, description="No marks found for this student and semester")

    return jsonify(
        {
            "usn": usn,
            "semester": semester,
            "role": viewer,
            "subjects": [evaluate_marks_row(row) for row in rows],
        }
    )


@app.route("/api/marks/<usn>/gpa")
def student_gpa(usn: str):
    usn = clean_usn(usn)
    viewer = record_viewer(usn)
    rows = get_db().execute(
        "SELECT semester, sgpa, cgpa FROM student_sgpa WHERE usn = ? ORDER BY semester",
        (usn,),
    ).fetchall()
    if not rows:
        abort(404, description="No SGPA recorded for this student")

    semesters = [
        {"semester": row["semester"], "sgpa": coerce_number(row["sgpa"])}
        for row in rows
        if row["semester"] > 0
    ]
    cgpa = next((row["cgpa"] for row in rows if row["semester"] == 0), None)
    return jsonify({"usn": usn, "role": viewer, "semesters": semesters, "cgpa": cgpa})


############################## ATTENDANCE ##############################


@app.route("/api/attendance", methods=["POST"])
@role_required(Role.FACULTY)
def submit_attendance():
    data = request_data()
    subject_code = text_value(data.get("subjectCode")).upper()
    semester = int_value(data.get("semester"))
    section = clean_section(data.get("section"))
    class_date = iso_date(data.get("date"))
    hours = coerce_number(data.get("hours"))
    absentees = data.get("absentees") or []

    if not subject_code or not semester or not section or not data.get("date") or not data.get("hours"):
        abort(400, description="All fields are required")
    if class_date is None:
        abort(400, description="Date must be in YYYY-MM-DD format")
    if hours <= 0:
        abort(400, description="Hours must be a positive number")
    if not isinstance(absentees, list):
        abort(400, description="Absentees must be a list of USNs")

    db = get_db()
    students = students_in_section(db, semester, section)
    if not students:
        abort(404, description="No students found for this class")

    absent = {clean_usn(usn) for usn in absentees}
    rows = [
        (student["usn"], subject_code, class_date, hours, "Absent" if student["usn"] in absent else "Present")
        for student in students
    ]

    # Insert-only: resubmitting a date adds another set of rows.
    with db:
        db.executemany(
            "INSERT INTO attendance (usn, subject_code, date, hours, status) VALUES (?, ?, ?, ?, ?)",
            rows,
        )

    logger.info(
        "Attendance for %s sem %s section %s on %s: %d absent of %d",
        subject_code, semester, section, class_date, sum(1 for row in rows if row[4] == "Absent"), len(rows),
    )
    return jsonify({"message": "Attendance updated successfully!", "recorded": len(rows)})


@app.route("/api/attendance/update", methods=["PUT"])
@role_required(Role.FACULTY)
def update_attendance():
    data = request_data()
    usn = clean_usn(data.get("usn"))
    subject_code = text_value(data.get("subjectCode")).upper()
    class_date = iso_date(data.get("date"))
    status = ATTENDANCE_STATUSES.get(text_value(data.get("status")).lower())
    hours = coerce_number(data.get("hours"))

    if not usn or not subject_code or not data.get("date") or not data.get("status") or not data.get("hours"):
        abort(400, description="All fields are required")
    if class_date is None or status is None or hours <= 0:
        abort(400, description="Invalid date, status or hours")

    db = get_db()
    cursor = db.execute(
        "UPDATE attendance SET status = ?, hours = ? WHERE usn = ? AND subject_code = ? AND date = ?",
        (status, hours, usn, subject_code, class_date),
    )
    if cursor.rowcount == 0:
        abort(404, description="Attendance record not found")
    db.commit()
    return jsonify({"message": "Attendance updated successfully!"})


@app.route("/api/attendance/report")
@role_required(Role.FACULTY)
def attendance_report():
    semester, section = class_args()
    subject_code = arg("subjectCode", "subject").upper()
    if not subject_code:
        abort(400, description="Semester, Section, and Subject are required")

    rows = get_db().execute(
        """
        SELECT
            st.usn,
            st.name,
            COUNT(DISTINCT a.date) AS total_classes,
            COUNT(DISTINCT CASE WHEN a.status = 'Present' THEN a.date END) AS attended_classes
        FROM student st
        LEFT JOIN attendance a
            ON UPPER(TRIM(a.usn)) = UPPER(TRIM(st.usn))
           AND UPPER(TRIM(a.subject_code)) = ?
        WHERE st.sem = ? AND st.section = ?
        GROUP BY st.usn, st.name
        ORDER BY st.usn
        """,
        (subject_code, semester, section),
    ).fetchall()

    report = []
    for row in rows:
        entry = dict(row)
        entry["percentage"] = attendance_percentage(row["attended_classes"], row["total_classes"])
        report.append(entry)
    return jsonify(report)


@app.route("/api/attendance/details")
@role_required(Role.FACULTY)
def attendance_details():
    semester, section = class_args()
    subject_code = arg("subjectCode", "subject").upper()
    class_date = iso_date(arg("date"))
    if not subject_code or class_date is None:
        abort(400, description="Subject and a valid date are required")

    rows = get_db().execute(
        """
        SELECT st.usn, st.name, a.status, a.hours
        FROM student st
        LEFT JOIN attendance a
            ON a.usn = st.usn AND a.subject_code = ? AND a.date = ?
        WHERE st.sem = ? AND st.section = ?
        ORDER BY st.usn
        """,
        (subject_code, class_date, semester, section),
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/attendance/me")
def my_attendance():
    credential = student_credential()
    db = get_db()
    student = db.execute(
        "SELECT usn, name, sem AS semester FROM student WHERE usn = ?",
        (credential.usn,),
    ).fetchone()
    if not student:
        abort(404, description="Student not found")

    summary = attendance_summary(db, credential.usn)
    return jsonify(
        {
            "role": credential.role_label,
            "usn": student["usn"],
            "name": student["name"],
            "semester": student["semester"],
            "threshold": ATTENDANCE_THRESHOLD,
            "overall": overall_attendance(summary),
            "data": summary,
        }
    )


@app.route("/api/attendance/subjects")
def my_attendance_subjects():
    credential = student_credential()
    rows = get_db().execute(
        """
        SELECT DISTINCT a.subject_code, s.subject_name
        FROM attendance a
        JOIN subjects s ON s.subject_code = a.subject_code
        WHERE a.usn = ?
        ORDER BY a.subject_code
        """,
        (credential.usn,),
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/attendance/monthly")
def monthly_attendance():
    credential = student_credential()
    subject_code = arg("subject", "subjectCode").upper()
    if not subject_code:
        abort(400, description="Subject code is required")

    rows = get_db().execute(
        """
        SELECT
            substr(date, 1, 7) AS month,
            SUM(hours) AS total_classes,
            SUM(CASE WHEN status = 'Present' THEN hours ELSE 0 END) AS attended_classes
        FROM attendance
        WHERE usn = ? AND subject_code = ?
        GROUP BY substr(date, 1, 7)
        ORDER BY month
        """,
        (credential.usn, subject_code),
    ).fetchall()
    return jsonify(cumulative_monthly(rows))


@app.route("/api/attendance/alert", methods=["POST"])
def attendance_alert():
    data = request_data()
    credential = student_credential(data.get("usn") or request.args.get("usn"))
    db = get_db()

    student = db.execute("SELECT usn, name, email FROM student WHERE usn = ?", (credential.usn,)).fetchone()
    if not student:
        abort(404, description="Student not found")

    now = utcnow()
    alert = db.execute("SELECT last_sent FROM attendance_alerts WHERE usn = ?", (student["usn"],)).fetchone()
    if alert and alert_on_cooldown(datetime.fromisoformat(alert["last_sent"]), now):
        return jsonify({"success": True, "message": "Alert already sent recently."})

    short = shortage_subjects(attendance_summary(db, student["usn"]))
    if not short:
        return jsonify({"success": True, "message": f"No subjects below {ATTENDANCE_THRESHOLD}%"})

    if not text_value(student["email"]):
        logger.warning("Attendance alert for %s skipped; no email on record", student["usn"])
        return jsonify({"success": False, "message": "No email on record"}), 400

    subject, text, html = compose_shortage_alert(student["name"], short)
    ok, detail = mailer.send_email(student["email"], subject, text, html=html)
    if not ok:
        logger.warning("Attendance alert for %s not sent: %s", student["usn"], detail)
        return jsonify({"success": False, "message": "Attendance alert could not be sent"}), 502

    with db:
        db.execute(
            """
            INSERT INTO attendance_alerts (usn, last_sent) VALUES (?, ?)
            ON CONFLICT(usn) DO UPDATE SET last_sent = excluded.last_sent
            """,
            (student["usn"], now.isoformat()),
        )
    logger.info("Attendance alert sent to %s for %d subjects", student["usn"], len(short))
    return jsonify({"success": True, "message": "Attendance alert sent", "subjects": len(short)})


############################## NOTES ##############################


@app.route("/api/notes/upload", methods=["POST"])
@role_required(Role.FACULTY)
def upload_note():
    principal = current_principal()
    semester = int_value(request.form.get("semester"))
    section = clean_section(request.form.get("section"))
    subject_code = text_value(request.form.get("subject")).upper()

    file_name, file_blob, file_mime, file_error = read_uploaded_file("file", NOTE_EXTENSIONS)
    if file_error:
        abort(400, description=file_error)
    if not semester or not section or not subject_code or not file_blob:
        abort(400, description="All fields required")

    db = get_db()
    if not is_assigned(db, principal.id, subject_code, semester, section):
        abort(403, description="You are not assigned to this subject, upload denied.")

    cursor = db.execute(
        """
        INSERT INTO notes (semester, section, subject_code, file_name, file_type, file_data, uploaded_by)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (semester, section, subject_code, file_name, file_mime, file_blob, principal.id),
    )
    db.commit()
    return jsonify({"message": "Note uploaded successfully!", "id": cursor.lastrowid}), 201


@app.route("/api/notes")
@login_required
def list_notes():
    semester, section = class_args()
    subject_code = arg("subject").upper()
    if not subject_code:
        abort(400, description="Semester, section, and subject required")

    rows = get_db().execute(
        """
        SELECT id, file_name, file_type, uploaded_by, uploaded_at
        FROM notes
        WHERE semester = ? AND section = ? AND subject_code = ?
        ORDER BY uploaded_at DESC, id DESC
        """,
        (semester, section, subject_code),
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


def serve_note(note_id: int, as_attachment: bool):
    db = get_db()
    note = db.execute("SELECT file_name FROM notes WHERE id = ?", (note_id,)).fetchone()
    stored = get_blob(db, "note", note_id) if note else None
    if not stored:
        abort(404, description="Note not found")
    blob, mime = stored
    return send_blob(note["file_name"] or f"note-{note_id}", blob, mime, as_attachment=as_attachment)


@app.route("/api/notes/<int:note_id>/download")
@login_required
def download_note(note_id: int):
    return serve_note(note_id, as_attachment=True)


@app.route("/api/notes/<int:note_id>/preview")
@login_required
def preview_note(note_id: int):
    return serve_note(note_id, as_attachment=False)


@app.route("/api/notes/<int:note_id>", methods=["DELETE"])
@role_required(Role.FACULTY)
def delete_note(note_id: int):
    principal = current_principal()
    db = get_db()

    note = db.execute("SELECT uploaded_by FROM notes WHERE id = ?", (note_id,)).fetchone()
    if not note:
        abort(404, description="Note not found")
    if note["uploaded_by"] != principal.id:
        abort(403, description="You can delete only your own uploads.")

    db.execute("DELETE FROM notes WHERE id = ?", (note_id,))
    db.commit()
    return jsonify({"message": "Note deleted successfully!"})


@app.route("/api/notes", methods=["DELETE"])
@role_required(Role.FACULTY)
def delete_my_notes():
    data = request_data()
    semester = int_value(data.get("semester"))
    section = clean_section(data.get("section"))
    subject_code = text_value(data.get("subject")).upper()
    if not semester or not section or not subject_code:
        abort(400, description="Semester, section, and subject required")

    db = get_db()
    cursor = db.execute(
        "DELETE FROM notes WHERE semester = ? AND section = ? AND subject_code = ? AND uploaded_by = ?",
        (semester, section, subject_code, current_principal().id),
    )
    db.commit()
    return jsonify({"message": "All your uploaded notes deleted successfully!", "deleted": cursor.rowcount})


@app.route("/api/notes/student-subjects")
@login_required
def note_subjects_for_class():
    semester, section = class_args()
    rows = get_db().execute(
        """
        SELECT DISTINCT s.subject_code, s.subject_name
        FROM subjects s
        JOIN notes n ON n.subject_code = s.subject_code
        WHERE n.semester = ? AND n.section = ?
        ORDER BY s.subject_code
        """,
        (semester, section),
    ).fetchall()
    return jsonify(rows_to_dicts(rows))


@app.route("/api/notes/student-new-count")
@role_required(Role.STUDENT)
def unread_note_count():
    principal = current_principal()
    row = get_db().execute(
        """
        SELECT COUNT(*) AS c
        FROM notes n
        LEFT JOIN note_views v ON v.note_id = n.id AND v.usn = ?
        WHERE v.id IS NULL AND n.semester = ? AND n.section = ?
        """,
        (principal.id, principal.semester, principal.section),
    ).fetchone()
    return jsonify({"count": row["c"]})


@app.route("/api/notes/<int:note_id>/viewed", methods=["POST"])
@role_required(Role.STUDENT)
def mark_note_viewed(note_id: int):
    db = get_db()
    if not db.execute("SELECT 1 FROM notes WHERE id = ?", (note_id,)).fetchone():
        abort(404, description="Note not found")

    db.execute(
        "INSERT OR IGNORE INTO note_views (usn, note_id) VALUES (?, ?)",
        (current_principal().id, note_id),
    )
    db.commit()
    return jsonify({"message": "Marked as viewed"})


############################## ANNOUNCEMENTS ##############################


@app.route("/api/announcements", methods=["POST"])
@role_required(Role.FACULTY, Role.ADMIN)
def create_announcement():
    principal = current_principal()
    data = request_data()
    title = text_value(data.get("title"))
    message = text_value(data.get("message"))
    category = text_value(data.get("type"))
    is_marquee = truthy(data.get("is_marquee"))

    if not title or not message:
        abort(400, description="Title and message are required")
    if category not in ANNOUNCEMENT_TYPES:
        category = "General"

    file_name, file_blob, file_mime, file_error = read_uploaded_file("file", ATTACHMENT_EXTENSIONS)
    if file_error:
        abort(400, description=file_error)

    db = get_db()
    with db:
        if is_marquee:
            db.execute("UPDATE announcements SET is_marquee = 0 WHERE is_marquee = 1")
        cursor = db.execute(
            """
            INSERT INTO announcements
                (title, message, faculty_id, author_name, type, file_name, file_type, file_data, is_marquee)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                title,
                message,
                principal_identifier(principal),
                principal.display_name,
                category,
                file_name,
                file_mime,
                file_blob,
                1 if is_marquee else 0,
            ),
        )
    announcement_id = cursor.lastrowid

    recipients = [
        row["email"]
        for row in db.execute(
            "SELECT email FROM student WHERE email IS NOT NULL AND email LIKE '%_@_%'"
        ).fetchall()
    ]
    if recipients:
        attachments = [(file_name, file_blob, file_mime)] if file_blob else None
        batches = mailer.send_bulk(
            recipients,
            f"New Announcement: {title}",
            f"{message}\n\n- {principal.display_name}",
            attachments=attachments,
        )
        logger.info("Announcement %s emailed in %d batch(es)", announcement_id, batches)
    else:
        logger.info("Announcement %s has no student recipients", announcement_id)

    return jsonify({"message": "Announcement created successfully!", "id": announcement_id}), 201


@app.route("/api/announcements")
@login_required
def list_announcements():
    rows = get_db().execute(
        """
        SELECT id, title, message, faculty_id, author_name, type, file_name, file_type, is_marquee, created_at
        FROM announcements
        ORDER BY created_at DESC, id DESC
        """
    ).fetchall()

    announcements = []
    for row in rows:
        item = dict(row)
        item["is_marquee"] = bool(row["is_marquee"])
        item["file_url"] = f"/api/announcements/{row['id']}/file" if row["file_type"] else None
        announcements.append(item)
    return jsonify(announcements)


@app.route("/api/announcements/<int:announcement_id>/file")
@login_required
def announcement_file(announcement_id: int):
    db = get_db()
    stored = get_blob(db, "announcement", announcement_id)
    if not stored:
        abort(404, description="File not found")
    blob, mime = stored
    row = db.execute("SELECT file_name FROM announcements WHERE id = ?", (announcement_id,)).fetchone()
    return send_blob(row["file_name"] or f"announcement-{announcement_id}", blob, mime, as_attachment=False)


############################## TIMETABLE ##############################


@app.route("/api/timetable/upload", methods=["POST"])
@role_required(Role.FACULTY)
def upload_timetable():
    principal = current_principal()
    db = get_db()

    advised = advised_class(db, principal.id)
    if not advised:
        abort(403, description="Only Class Advisor can upload timetable")

    file_name, file_blob, file_mime, file_error = read_uploaded_file("timetable", TIMETABLE_EXTENSIONS)
    if file_error:
        abort(400, description=file_error)
    if not file_blob:
        abort(400, description="No file uploaded")

    put_blob(
        db,
        "timetable",
        (advised["sem"], advised["section"]),
        file_blob,
        file_mime,
        file_name=file_name,
        uploaded_by=principal.id,
        uploaded_at=utcnow().isoformat(),
    )
    db.commit()
    logger.info("Timetable uploaded for sem %s section %s", advised["sem"], advised["section"])
    return jsonify({"message": "Timetable uploaded successfully!"})


def timetable_info(semester: int, section: str):
    row = get_db().execute(
        "SELECT sem, section, file_name, file_type, uploaded_at FROM timetable WHERE sem = ? AND section = ?",
        (semester, section),
    ).fetchone()
    if not row:
        abort(404, description="No timetable uploaded yet for this class.")
    info = dict(row)
    info["file"] = f"/api/timetable/file?sem={semester}&section={section}"
    return jsonify(info)


@app.route("/api/timetable/student-view")
@role_required(Role.STUDENT)
def student_timetable():
    principal = current_principal()
    return timetable_info(principal.semester, principal.section)


@app.route("/api/timetable/faculty-view")
@role_required(Role.FACULTY)
def faculty_timetable():
    advised = advised_class(get_db(), current_principal().id)
    if not advised:
        abort(404, description="You are not a Class Advisor for any class.")
    return timetable_info(advised["sem"], advised["section"])


@app.route("/api/timetable/file")
@login_required
def timetable_file():
    principal = current_principal()
    semester, section = class_args()
    if principal.role is Role.STUDENT and (principal.semester != semester or principal.section != section):
        abort(403, description="Students can only view their own class timetable")

    db = get_db()
    stored = get_blob(db, "timetable", (semester, section))
    if not stored:
        abort(404, description="No timetable uploaded yet for this class.")
    blob, mime = stored
    row = db.execute("SELECT file_name FROM timetable WHERE sem = ? AND section = ?", (semester, section)).fetchone()
    return send_blob(row["file_name"] or f"timetable-{semester}{section}", blob, mime, as_attachment=False)


############################## ERRORS ##############################


@app.errorhandler(HTTPException)
def http_error(error: HTTPException):
    return jsonify({"error": error.description}), error.code


@app.errorhandler(413)
def too_large(_error):
    return jsonify({"error": f"Request too large. Max upload size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB."}), 413


@app.errorhandler(sqlite3.Error)
def database_error(error: sqlite3.Error):
    logger.exception("Database error on %s %s", request.method, request.path, exc_info=error)
    db = g.get("db")
    if db is not None:
        db.rollback()
    return jsonify({"error": "Database error"}), 500


@app.errorhandler(Exception)
def unhandled_error(error: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.path, exc_info=error)
    return jsonify({"error": "Internal Server Error"}), 500


with app.app_context():
    init_db()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5050"))
    app.run(host="0.0.0.0", port=port, debug=os.environ.get("FLASK_DEBUG") == "1")
