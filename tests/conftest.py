import os
import sqlite3
import tempfile

import pytest

# Configure the app before it is imported and initialises its database.
os.environ["DATABASE_PATH"] = os.path.join(tempfile.gettempdir(), "dept-portal-import.db")
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["PORTAL_URL"] = "http://portal.test/"
for name in ("ADMIN_EMAIL", "ADMIN_PASSWORD", "SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD"):
    os.environ.pop(name, None)

import mailer
from access import Principal, Role
from app import app as flask_app, init_db
from werkzeug.security import generate_password_hash

PASSWORD = "secret123"


class Outbox:
    def __init__(self):
        self.messages = []
        self.fail = False

    def send_email(self, to_email, subject, text, html=None, bcc=None, attachments=None):
        self.messages.append(
            {
                "to": to_email,
                "subject": subject,
                "text": text,
                "html": html,
                "bcc": bcc,
                "attachments": attachments,
            }
        )
        if self.fail:
            return False, "Email send failed: connection refused"
        return True, "Email sent successfully."


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(TESTING=True, DATABASE_PATH=str(tmp_path / "portal.db"))
    with flask_app.app_context():
        init_db()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    conn = sqlite3.connect(app.config["DATABASE_PATH"])
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()
    monkeypatch.setattr(mailer, "send_email", box.send_email)
    return box


def add_student(db, usn, name, sem=5, section="A", email=None):
    db.execute(
        "INSERT INTO student (usn, name, email, password, section, sem) VALUES (?, ?, ?, ?, ?, ?)",
        (usn, name, email, generate_password_hash(PASSWORD), section, sem),
    )
    db.commit()


def add_faculty(db, ssn_id, name, position="Assistant Professor", email=None):
    db.execute(
        "INSERT INTO faculty (ssn_id, name, email, password, position) VALUES (?, ?, ?, ?, ?)",
        (ssn_id, name, email, generate_password_hash(PASSWORD), position),
    )
    db.commit()


def add_subject(db, code, name, semester=5, credit=4):
    db.execute(
        "INSERT INTO subjects (subject_code, subject_name, semester, credit) VALUES (?, ?, ?, ?)",
        (code, name, semester, credit),
    )
    db.commit()


def assign(db, ssn_id, name, code, sem=5, section="A"):
    db.execute(
        "INSERT INTO faculty_subject (faculty_id, faculty_name, subject_code, section, sem) VALUES (?, ?, ?, ?, ?)",
        (ssn_id, name, code, section, sem),
    )
    db.commit()


def log_in(client, principal):
    with client.session_transaction() as sess:
        sess["principal"] = principal.to_session()


@pytest.fixture
def department(db):
    add_subject(db, "CS501", "Database Management Systems")
    add_subject(db, "CS502L", "Networks Lab", credit=1)
    add_faculty(db, "F001", "Ravi Kumar", email="ravi@dept.test")
    add_faculty(db, "F002", "Meena Rao", position="Head of Department", email="meena@dept.test")
    add_student(db, "1XX21CS001", "Asha", email="asha@dept.test")
    add_student(db, "1XX21CS002", "Bharath", email="bharath@dept.test")
    add_student(db, "1XX21CS003", "Chitra", section="B", email="chitra@dept.test")
    assign(db, "F001", "Ravi Kumar", "CS501")
    assign(db, "F001", "Ravi Kumar", "CS502L")
    return db


@pytest.fixture
def as_faculty(client):
    principal = Principal(id="F001", role=Role.FACULTY, display_name="Ravi Kumar", email="ravi@dept.test")
    log_in(client, principal)
    return principal


@pytest.fixture
def as_other_faculty(client):
    principal = Principal(id="F002", role=Role.FACULTY, display_name="Meena Rao", email="meena@dept.test")
    log_in(client, principal)
    return principal


@pytest.fixture
def as_student(client):
    principal = Principal(
        id="1XX21CS001",
        role=Role.STUDENT,
        display_name="Asha",
        email="asha@dept.test",
        semester=5,
        section="A",
    )
    log_in(client, principal)
    return principal


@pytest.fixture
def as_admin(client):
    principal = Principal(id="1", role=Role.ADMIN, display_name="Office", email="office@dept.test")
    log_in(client, principal)
    return principal
