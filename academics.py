from __future__ import annotations

import html
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable


ATTENDANCE_THRESHOLD = 75
ALERT_COOLDOWN_DAYS = 15

PASS = "P"
FAIL = "F"

MIN_INTERNAL = 20
MIN_EXTERNAL = 18
MIN_TOTAL = 40

CIE_MAX_COMBINED = 50
CIE_WEIGHT_THEORY = 25
CIE_WEIGHT_LAB = 15

# Larger inputs are treated as malformed rather than stored.
MAX_MAGNITUDE = 10**6


def _decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, Decimal):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return Decimal(0)
    if not number.is_finite() or abs(number) > MAX_MAGNITUDE:
        return Decimal(0)
    return number


def _plain(number: Decimal) -> int | float:
    if number == number.to_integral_value():
        return int(number)
    return float(number)


def coerce_number(value: Any) -> int | float:
    """Read a marks component, treating anything non-numeric as zero."""
    if value is None or value == "":
        return 0
    return _plain(_decimal(value))


def round_half_up(value: Any, places: int = 0) -> int | float:
    quantum = Decimal(1).scaleb(-places)
    rounded = _decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    if places == 0:
        return int(rounded)
    return float(rounded)


def weighted_cie(cie1: Any, cie2: Any, is_lab: bool) -> int:
    weight = CIE_WEIGHT_LAB if is_lab else CIE_WEIGHT_THEORY
    scaled = (_decimal(cie1) + _decimal(cie2)) * weight / CIE_MAX_COMBINED
    return int(math.ceil(scaled))


def evaluate_marks(
    cie1: Any,
    cie2: Any,
    lab: Any,
    assignment: Any,
    external: Any,
    is_lab: bool,
) -> dict[str, Any]:
    """Derive internal, total and result from raw marks components.

    The CIE pair is scaled to 15 (lab subjects) or 25 (theory) and rounded up
    before lab and assignment scores are added. A subject is passed only when
    the internal, external and total thresholds all hold.
    """
    internal = Decimal(weighted_cie(cie1, cie2, bool(is_lab))) + _decimal(lab) + _decimal(assignment)
    external_score = _decimal(external)
    total = internal + external_score

    passed = (
        internal >= MIN_INTERNAL
        and external_score >= MIN_EXTERNAL
        and total >= MIN_TOTAL
    )
    return {
        "internal": _plain(internal),
        "total": _plain(total),
        "result": PASS if passed else FAIL,
    }


def evaluate_marks_row(row: Any) -> dict[str, Any]:
    derived = evaluate_marks(
        row["cie1"],
        row["cie2"],
        row["lab"],
        row["assignment"],
        row["external"],
        bool(row["is_lab"]),
    )
    record = {key: row[key] for key in row.keys()}
    for key in ("cie1", "cie2", "lab", "assignment", "external"):
        record[key] = coerce_number(record[key])
    record["is_lab"] = bool(record["is_lab"])
    record.update(derived)
    return record


def compute_cgpa(sgpa_values: Iterable[Any]) -> float | None:
    values = [_decimal(v) for v in sgpa_values]
    if not values:
        return None
    mean = sum(values, Decimal(0)) / len(values)
    return round_half_up(mean, 2)


def attendance_percentage(attended: Any, total: Any, places: int = 2) -> int | float:
    total_hours = _decimal(total)
    if total_hours == 0:
        return 0 if places == 0 else 0.0
    return round_half_up(_decimal(attended) * 100 / total_hours, places)


def below_threshold(attended: Any, total: Any, threshold: int = ATTENDANCE_THRESHOLD) -> bool:
    total_hours = _decimal(total)
    return total_hours > 0 and _decimal(attended) * 100 < threshold * total_hours


def subject_summary(rows: Iterable[Any], threshold: int = ATTENDANCE_THRESHOLD) -> list[dict[str, Any]]:
    summary: list[dict[str, Any]] = []
    for row in rows:
        attended = coerce_number(row["attended_classes"])
        total = coerce_number(row["total_classes"])
        percentage = attendance_percentage(attended, total)
        summary.append(
            {
                "subject_code": row["subject_code"],
                "subject_name": row["subject_name"],
                "semester": row["semester"],
                "attended_classes": attended,
                "total_classes": total,
                "percentage": percentage,
                "is_shortage": below_threshold(attended, total, threshold),
            }
        )
    return summary


def overall_attendance(summary_rows: list[dict[str, Any]]) -> dict[str, Any]:
    total = sum(row["total_classes"] for row in summary_rows)
    attended = sum(row["attended_classes"] for row in summary_rows)
    return {
        "attended_classes": attended,
        "total_classes": total,
        "percentage": attendance_percentage(attended, total),
    }


def cumulative_monthly(rows: Iterable[Any]) -> list[dict[str, Any]]:
    """Running attendance across months, in the order the rows are given."""
    cumulative_total = Decimal(0)
    cumulative_attended = Decimal(0)
    result: list[dict[str, Any]] = []
    for row in rows:
        total = _decimal(row["total_classes"])
        attended = _decimal(row["attended_classes"])
        cumulative_total += total
        cumulative_attended += attended
        result.append(
            {
                "month": row["month"],
                "attended_classes": _plain(attended),
                "total_classes": _plain(total),
                "cumulative_attended": _plain(cumulative_attended),
                "cumulative_total": _plain(cumulative_total),
                "percentage": attendance_percentage(cumulative_attended, cumulative_total, places=0),
            }
        )
    return result


def shortage_subjects(
    summary_rows: list[dict[str, Any]], threshold: int = ATTENDANCE_THRESHOLD
) -> list[dict[str, Any]]:
    return [
        row
        for row in summary_rows
        if below_threshold(row["attended_classes"], row["total_classes"], threshold)
    ]


def alert_on_cooldown(last_sent: Any, now: Any, days: int = ALERT_COOLDOWN_DAYS) -> bool:
    if last_sent is None:
        return False
    return (now - last_sent).total_seconds() < days * 24 * 60 * 60


def compose_shortage_alert(
    student_name: str,
    rows: list[dict[str, Any]],
    threshold: int = ATTENDANCE_THRESHOLD,
) -> tuple[str, str, str]:
    listed = [
        (row["subject_name"] or row["subject_code"], round_half_up(row["percentage"]))
        for row in rows
    ]

    lines = [
        f"Hello {student_name},",
        "",
        f"Your attendance is below {threshold}% in the following subjects:",
    ]
    lines.extend(f"{name} ({percent}%)" for name, percent in listed)
    lines.extend(["", "Please take necessary action.", "", "Regards,", "CSE Department"])

    items = "".join(
        f"<li>{html.escape(name)} - <strong>{percent}%</strong></li>" for name, percent in listed
    )
    body_html = (
        f"<p>Hello <strong>{html.escape(student_name)}</strong>,</p>"
        f"<p>Your attendance is below {threshold}% in the following subjects:</p>"
        f"<ul>{items}</ul>"
        "<p>Please take necessary action.</p>"
        "<p>Regards,<br/>CSE Department</p>"
    )
    return "Attendance Shortage Alert", "\n".join(lines), body_html
