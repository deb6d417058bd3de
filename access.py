from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping


class Role(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"


class Denied(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role
    display_name: str
    email: str
    semester: int | None = None
    section: str | None = None

    def to_session(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_session(cls, data: Mapping[str, Any] | None) -> Principal | None:
        if not data or not data.get("id"):
            return None
        try:
            role = Role(data.get("role"))
        except ValueError:
            return None
        return cls(
            id=str(data["id"]),
            role=role,
            display_name=data.get("display_name") or "",
            email=data.get("email") or "",
            semester=data.get("semester"),
            section=data.get("section"),
        )


@dataclass(frozen=True)
class StudentCredential:
    usn: str
    verified: bool

    @property
    def role_label(self) -> str:
        return Role.STUDENT.value if self.verified else "guest"


ROLE_LABELS = {
    Role.STUDENT: "Student",
    Role.FACULTY: "Faculty",
    Role.ADMIN: "Admin",
}


def principal_identifier(principal: Principal) -> str:
    if principal.role is Role.STUDENT:
        return principal.id
    if principal.role is Role.FACULTY:
        return principal.id
    if principal.role is Role.ADMIN:
        return principal.email
    raise ValueError(f"Unknown role: {principal.role!r}")


def authorize(session_data: Mapping[str, Any] | None, *required: Role) -> Principal:
    principal = Principal.from_session(session_data)
    if principal is None:
        raise Denied(401, "Not logged in")
    if principal.role not in required:
        wanted = " or ".join(ROLE_LABELS[role] for role in required)
        raise Denied(403, f"{wanted} privileges required")
    return principal


def resolve_student(session_data: Mapping[str, Any] | None, explicit_usn: str | None) -> StudentCredential:
    principal = Principal.from_session(session_data)
    if principal is not None and principal.role is Role.STUDENT:
        return StudentCredential(usn=principal.id, verified=True)

    usn = (explicit_usn or "").strip().upper()
    if not usn:
        raise Denied(401, "Unauthorized. Please login as student or provide ?usn")
    return StudentCredential(usn=usn, verified=False)
