"""
Derived academic figures.

Everything here is a pure function of raw counters or marks; services call
these explicitly right before persisting so stored derived columns always
match their inputs.
"""

ATTENDANCE_BANDS = ((90, "Excellent"), (80, "Good"), (75, "Average"), (65, "Poor"))
MARKS_BANDS = ((90, "A+"), (80, "A"), (70, "B+"), (60, "B"), (50, "C+"), (40, "C"), (35, "D"))
# Semester result grades carry grade points
RESULT_BANDS = ((90, "A+", 10), (80, "A", 9), (70, "B+", 8), (60, "B", 7), (50, "C+", 6), (40, "C", 5), (35, "D", 4))
PASS_MARK = 35


def attendance_percentage(attended, total):
    if not total:
        return 0.0
    return round(attended / total * 100, 2)


def attendance_status(percentage):
    for floor, label in ATTENDANCE_BANDS:
        if percentage >= floor:
            return label
    return "Critical"


def derive_attendance_fields(subjects):
    """
    Given ``[(total_classes, attended_classes), ...]`` per subject, return the
    per-subject ``(percentage, status)`` list and the overall rollup dict.
    """
    per_subject = []
    total = attended = 0
    for subject_total, subject_attended in subjects:
        pct = attendance_percentage(subject_attended, subject_total)
        per_subject.append((pct, attendance_status(pct)))
        total += subject_total
        attended += subject_attended
    overall_pct = attendance_percentage(attended, total)
    return per_subject, {
        "total_classes": total,
        "attended_classes": attended,
        "percentage": overall_pct,
        "status": attendance_status(overall_pct),
    }


def marks_grade(percentage):
    for floor, grade in MARKS_BANDS:
        if percentage >= floor:
            return grade
    return "F"


def derive_marks_fields(obtained, total):
    # Grade from the unrounded ratio so 89.996 never rounds into an A+
    raw = obtained / total * 100 if total else 0.0
    return {"percentage": round(raw, 2), "grade": marks_grade(raw)}


def result_grade(total_marks):
    for floor, grade, points in RESULT_BANDS:
        if total_marks >= floor:
            return grade, points
    return "F", 0


def derive_result_fields(subjects):
    """
    ``subjects`` is a list of dicts with ``credits``, ``internal`` and
    ``external``. Returns ``(subject_rows, summary)`` where each row adds
    ``total``, ``grade``, ``grade_points`` and ``result``.
    """
    rows = []
    total_credits = 0
    weighted_points = 0
    marks_sum = 0.0
    for s in subjects:
        total = (s.get("internal") or 0) + (s.get("external") or 0)
        grade, points = result_grade(total)
        rows.append(dict(s, total=total, grade=grade, grade_points=points,
                         result="Pass" if total >= PASS_MARK else "Fail"))
        total_credits += s["credits"]
        weighted_points += points * s["credits"]
        marks_sum += total

    sgpa = round(weighted_points / total_credits, 2) if total_credits else 0.0
    percentage = round(marks_sum / len(rows), 2) if rows else 0.0
    passed = bool(rows) and all(r["result"] == "Pass" for r in rows)
    return rows, {
        "sgpa": sgpa,
        "total_credits": total_credits,
        "earned_credits": total_credits if passed else 0,
        "percentage": percentage,
        "status": "Pass" if passed else "Fail",
    }


def compute_cgpa(results):
    """
    ``results`` is an iterable of ``(status, sgpa, earned_credits)``.
    Only passed semesters count towards CGPA.
    """
    weighted = 0.0
    credits = 0
    for status, sgpa, earned in results:
        if status != "Pass":
            continue
        weighted += (sgpa or 0) * (earned or 0)
        credits += earned or 0
    return round(weighted / credits, 2) if credits else 0.0
