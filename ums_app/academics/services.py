from datetime import date, datetime

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, DataError
from sqlalchemy.orm.exc import StaleDataError

from .. import db
from ..models import (
    AttendanceSummary, AttendanceSubject, AttendanceDay, AttendanceDayEntry,
    PeriodAttendance, Marks, Result, ResultSubject, Faculty,
    DAILY_STATUSES, PERIOD_STATUSES, EXAM_TYPES, CLASS_TYPES, utc_now,
)
from ..errors import ValidationError, NotFoundError, ConflictError, PermissionDenied
from ..decorators import user_role
from ..accounts.services import get_student
from .metrics import (
    derive_attendance_fields, attendance_percentage, attendance_status,
    derive_marks_fields, derive_result_fields, compute_cgpa,
)


def _commit(what):
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(f"Duplicate {what}; resubmit to update the existing record") from e
    except StaleDataError as e:
        db.session.rollback()
        raise ConflictError(f"{what.capitalize()} was modified by another request; resubmit") from e
    except DataError as e:
        db.session.rollback()
        raise ValidationError(f"A {what} field is too long or out of range") from e


def parse_date(value, field="date"):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value or "")[:10])
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD")


def _number(value, field):
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")


def _int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def faculty_for_user(user):
    return db.session.execute(select(Faculty).filter_by(user_id_fk=user.user_id)).scalars().first()


def resolve_faculty(actor, faculty_id=None):
    """Faculty acting for themselves, or an admin naming one explicitly."""
    role = user_role(actor)
    if role == "faculty":
        own = faculty_for_user(actor)
        if own is None:
            raise NotFoundError("Faculty profile not found")
        if faculty_id not in (None, "") and str(faculty_id) != str(own.faculty_id):
            raise PermissionDenied("Faculty may only act on their own records")
        return own
    faculty = db.session.get(Faculty, _int(faculty_id, "facultyId")) if faculty_id not in (None, "") else None
    if faculty is None:
        raise NotFoundError("Faculty not found")
    return faculty


# ==========================================
# DAILY ATTENDANCE
# ==========================================

def _clean_day_subjects(subjects):
    if not isinstance(subjects, list) or not subjects:
        raise ValidationError("subjects must be a non-empty list")
    cleaned = {}
    for row in subjects:
        if not isinstance(row, dict):
            raise ValidationError("Each subject must be an object")
        code = (row.get("subjectCode") or "").strip()
        name = (row.get("subjectName") or "").strip()
        status = row.get("status")
        if not code or not name:
            raise ValidationError("subjectCode and subjectName are required")
        if status not in DAILY_STATUSES:
            raise ValidationError("status must be one of Present, Absent, Late")
        period = row.get("period")
        period = None if period in (None, "") else _int(period, "period")
        # One entry per (subject, period); a subject taught twice a day counts twice
        if (code, period) in cleaned:
            raise ValidationError(f"Subject {code} appears twice for the same period")
        cleaned[(code, period)] = {"name": name, "status": status}
    return cleaned


def _summary_subject(summary, code, name):
    subject = summary.subject(code)
    if subject is None:
        subject = AttendanceSubject(subject_code=code, subject_name=name, total_classes=0, attended_classes=0)
        summary.subjects.append(subject)
    elif name and subject.subject_name != name:
        subject.subject_name = name
    return subject


def apply_derived_attendance(summary):
    per_subject, overall = derive_attendance_fields(
        [(s.total_classes or 0, s.attended_classes or 0) for s in summary.subjects]
    )
    for subject, (pct, status) in zip(summary.subjects, per_subject):
        subject.percentage = pct
        subject.status = status
    summary.overall_total_classes = overall["total_classes"]
    summary.overall_attended_classes = overall["attended_classes"]
    summary.overall_percentage = overall["percentage"]
    summary.overall_status = overall["status"]


def record_daily_attendance(student_id, on_date, subjects, academic_year=None):
    """
    Record one day's attendance for a student.

    Re-submitting a date replaces that day's entries and adjusts counters by
    the difference between old and new statuses, so totals never double.
    Only ``Present`` counts as attended.
    """
    on_date = parse_date(on_date)
    incoming = _clean_day_subjects(subjects)
    student = get_student(student_id)
    academic_year = str(academic_year or utc_now().year)
    semester = student.semester or 1

    summary = db.session.execute(
        select(AttendanceSummary).filter_by(regd_no=student.regd_no, semester=semester, academic_year=academic_year)
    ).scalars().first()
    if summary is None:
        summary = AttendanceSummary(
            regd_no=student.regd_no, semester=semester, academic_year=academic_year,
            overall_total_classes=0, overall_attended_classes=0,
        )
        db.session.add(summary)

    day = summary.day(on_date)
    if day is not None:
        previous = {(e.subject_code, e.period): e.status for e in day.entries}
        for (code, period), row in incoming.items():
            subject = _summary_subject(summary, code, row["name"])
            now_present = row["status"] == "Present"
            if (code, period) in previous:
                subject.attended_classes += int(now_present) - int(previous[(code, period)] == "Present")
            else:
                subject.total_classes += 1
                subject.attended_classes += int(now_present)
        for (code, period), status in previous.items():
            if (code, period) in incoming:
                continue
            subject = summary.subject(code)
            if subject is None:
                continue
            subject.total_classes = max(subject.total_classes - 1, 0)
            subject.attended_classes = max(subject.attended_classes - int(status == "Present"), 0)
        day.entries = []
    else:
        day = AttendanceDay(date=on_date)
        summary.days.append(day)
        for (code, _period), row in incoming.items():
            subject = _summary_subject(summary, code, row["name"])
            subject.total_classes += 1
            subject.attended_classes += int(row["status"] == "Present")

    for (code, period), row in incoming.items():
        day.entries.append(AttendanceDayEntry(
            subject_code=code, subject_name=row["name"], status=row["status"], period=period,
        ))

    apply_derived_attendance(summary)
    # Always touch the parent row so its version is checked on every write
    summary.updated_at = utc_now()
    _commit("attendance")
    current_app.logger.info(
        "Daily attendance %s on %s: %d entries, overall %.2f%%",
        student.regd_no, on_date, len(incoming), summary.overall_percentage,
    )
    return summary


def student_attendance(student_id, semester=None, academic_year=None):
    student = get_student(student_id)
    q = AttendanceSummary.query.filter_by(regd_no=student.regd_no)
    if semester not in (None, ""):
        q = q.filter_by(semester=_int(semester, "semester"))
    if academic_year:
        q = q.filter_by(academic_year=str(academic_year))
    summaries = q.order_by(AttendanceSummary.academic_year, AttendanceSummary.semester).all()

    total = sum(s.overall_total_classes or 0 for s in summaries)
    attended = sum(s.overall_attended_classes or 0 for s in summaries)
    pct = attendance_percentage(attended, total)
    return summaries, {
        "totalClasses": total,
        "attendedClasses": attended,
        "percentage": pct,
        "status": attendance_status(pct),
    }


# ==========================================
# PERIOD ATTENDANCE
# ==========================================

def record_period_attendance(faculty, student_id, subject, subject_code, on_date, period, status,
                             semester, branch, section, academic_year, class_type="Lecture",
                             remarks=None, commit=True):
    """Upsert one student's attendance for one period. No counters are kept."""
    if not subject or not subject_code or not branch or not section or not academic_year:
        raise ValidationError("subject, subjectCode, branch, section and academicYear are required")
    if status not in PERIOD_STATUSES:
        raise ValidationError("status must be one of Present, Absent, Late, Excused")
    if class_type not in CLASS_TYPES:
        raise ValidationError("classType must be one of Lecture, Tutorial, Practical, Lab")
    period = _int(period, "period")
    if period < 1:
        raise ValidationError("period must be positive")
    on_date = parse_date(on_date)
    student = get_student(student_id)
    academic_year = str(academic_year)

    record = db.session.execute(
        select(PeriodAttendance).filter_by(
            regd_no=student.regd_no, subject=subject, date=on_date, period=period, academic_year=academic_year,
        )
    ).scalars().first()
    if record is None:
        record = PeriodAttendance(
            regd_no=student.regd_no, subject=subject, date=on_date, period=period, academic_year=academic_year,
        )
        db.session.add(record)
    record.faculty_id_fk = faculty.faculty_id
    record.subject_code = subject_code
    record.semester = _int(semester, "semester")
    record.branch = branch
    record.section = section
    record.class_type = class_type
    record.status = status
    record.remarks = remarks

    if commit:
        _commit("period attendance")
    return record


def record_class_attendance(faculty, details, rows):
    """One period for a whole class; all rows land in a single commit."""
    if not isinstance(rows, list) or not rows:
        raise ValidationError("attendanceData must be a non-empty list")
    records = []
    for row in rows:
        if not isinstance(row, dict):
            raise ValidationError("Each attendance row must be an object")
        records.append(record_period_attendance(
            faculty,
            row.get("studentId"),
            details.get("subject"),
            details.get("subjectCode"),
            details.get("date"),
            details.get("period"),
            row.get("status"),
            details.get("semester"),
            details.get("branch"),
            details.get("section"),
            details.get("academicYear"),
            class_type=details.get("classType") or "Lecture",
            remarks=row.get("remarks"),
            commit=False,
        ))
    _commit("period attendance")
    current_app.logger.info(
        "Period attendance by faculty %s: %s period %s on %s, %d student(s)",
        faculty.faculty_id, details.get("subject"), details.get("period"), details.get("date"), len(records),
    )
    return records


def faculty_period_attendance(faculty, filters=None):
    filters = filters or {}
    q = PeriodAttendance.query.filter_by(faculty_id_fk=faculty.faculty_id)
    if filters.get("date"):
        q = q.filter_by(date=parse_date(filters["date"]))
    for column in ("subject", "branch", "section"):
        if filters.get(column):
            q = q.filter(getattr(PeriodAttendance, column) == filters[column])
    if filters.get("semester") not in (None, ""):
        q = q.filter_by(semester=_int(filters["semester"], "semester"))
    return q.order_by(PeriodAttendance.date.desc(), PeriodAttendance.period, PeriodAttendance.regd_no).all()


# ==========================================
# MARKS
# ==========================================

def record_marks(faculty, student_id, subject, subject_code, exam_type, academic_year, obtained_marks,
                 total_marks, semester, branch, section, exam_date, remarks=None):
    """Upsert on (student, subject, exam type, academic year) and re-derive grade."""
    if not subject or not subject_code or not branch or not section or not academic_year:
        raise ValidationError("subject, subjectCode, branch, section and academicYear are required")
    if exam_type not in EXAM_TYPES:
        raise ValidationError(f"examType must be one of {', '.join(EXAM_TYPES)}")
    obtained = _number(obtained_marks, "obtainedMarks")
    total = _number(total_marks, "totalMarks")
    if total <= 0:
        raise ValidationError("totalMarks must be greater than zero")
    if obtained < 0 or obtained > total:
        raise ValidationError("obtainedMarks must be between 0 and totalMarks")
    exam_date = parse_date(exam_date, "dateOfExam")
    student = get_student(student_id)
    academic_year = str(academic_year)

    mark = db.session.execute(
        select(Marks).filter_by(regd_no=student.regd_no, subject=subject, exam_type=exam_type, academic_year=academic_year)
    ).scalars().first()
    created = mark is None
    if created:
        mark = Marks(regd_no=student.regd_no, subject=subject, exam_type=exam_type, academic_year=academic_year)
        db.session.add(mark)
    mark.faculty_id_fk = faculty.faculty_id
    mark.subject_code = subject_code
    mark.semester = _int(semester, "semester")
    mark.branch = branch
    mark.section = section
    mark.obtained_marks = obtained
    mark.total_marks = total
    mark.remarks = remarks
    mark.exam_date = exam_date
    for field, value in derive_marks_fields(obtained, total).items():
        setattr(mark, field, value)

    _commit("marks")
    current_app.logger.info(
        "Marks %s for %s %s %s: %s/%s (%s)",
        "created" if created else "updated", student.regd_no, subject, exam_type, obtained, total, mark.grade,
    )
    return mark


def publish_marks(mark_id, faculty=None):
    mark = db.session.get(Marks, mark_id)
    if mark is None:
        raise NotFoundError("Marks record not found")
    if faculty is not None and mark.faculty_id_fk != faculty.faculty_id:
        raise PermissionDenied("Faculty may only publish their own marks")
    if not mark.is_published:
        mark.is_published = True
        _commit("marks")
        current_app.logger.info("Marks %s published", mark.mark_id)
    return mark


def faculty_marks(faculty, filters=None):
    filters = filters or {}
    q = Marks.query.filter_by(faculty_id_fk=faculty.faculty_id)
    for column in ("subject", "branch", "section", "exam_type", "academic_year"):
        if filters.get(column):
            q = q.filter(getattr(Marks, column) == filters[column])
    if filters.get("semester") not in (None, ""):
        q = q.filter_by(semester=_int(filters["semester"], "semester"))
    return q.order_by(Marks.exam_date.desc(), Marks.regd_no).all()


# ==========================================
# RESULTS
# ==========================================

def _clean_result_subjects(subjects):
    if not isinstance(subjects, list) or not subjects:
        raise ValidationError("subjects must be a non-empty list")
    cleaned = []
    for row in subjects:
        if not isinstance(row, dict):
            raise ValidationError("Each subject must be an object")
        code = (row.get("subjectCode") or "").strip()
        name = (row.get("subjectName") or "").strip()
        if not code or not name:
            raise ValidationError("subjectCode and subjectName are required")
        credits = _int(row.get("credits"), "credits")
        if credits <= 0:
            raise ValidationError("credits must be positive")
        marks = row.get("marks") if isinstance(row.get("marks"), dict) else row
        internal = _number(marks.get("internal", 0), "internal")
        external = _number(marks.get("external", 0), "external")
        if internal < 0 or external < 0:
            raise ValidationError("marks cannot be negative")
        cleaned.append({"code": code, "name": name, "credits": credits, "internal": internal, "external": external})
    return cleaned


def save_result(student_id, semester, academic_year, subjects):
    """Create or replace a semester result; SGPA and status are re-derived."""
    if not academic_year:
        raise ValidationError("academicYear is required")
    semester = _int(semester, "semester")
    rows, summary = derive_result_fields(_clean_result_subjects(subjects))
    student = get_student(student_id)
    academic_year = str(academic_year)

    result = db.session.execute(
        select(Result).filter_by(regd_no=student.regd_no, semester=semester, academic_year=academic_year)
    ).scalars().first()
    if result is None:
        result = Result(regd_no=student.regd_no, semester=semester, academic_year=academic_year)
        db.session.add(result)

    result.subjects = [
        ResultSubject(
            subject_code=r["code"], subject_name=r["name"], credits=r["credits"],
            internal_marks=r["internal"], external_marks=r["external"], total_marks=r["total"],
            grade=r["grade"], grade_points=r["grade_points"], result=r["result"],
        )
        for r in rows
    ]
    for field, value in summary.items():
        setattr(result, field, value)

    _commit("result")
    current_app.logger.info(
        "Result saved for %s sem %s (%s): SGPA %.2f %s",
        student.regd_no, semester, academic_year, result.sgpa, result.status,
    )
    return result


def publish_result(result_id):
    result = db.session.get(Result, result_id)
    if result is None:
        raise NotFoundError("Result not found")
    if not result.is_published:
        result.is_published = True
        result.published_date = utc_now()
        _commit("result")
    return result


def compute_result_summary(student_id, published_only=False):
    student = get_student(student_id)
    q = Result.query.filter_by(regd_no=student.regd_no)
    if published_only:
        q = q.filter_by(is_published=True)
    results = q.order_by(Result.semester).all()

    passed = [r for r in results if r.status == "Pass"]
    return results, {
        "totalSemesters": len(results),
        "totalCredits": sum(r.earned_credits or 0 for r in passed),
        "overallCGPA": compute_cgpa((r.status, r.sgpa, r.earned_credits) for r in results),
        "passedSemesters": len(passed),
        "failedSemesters": sum(1 for r in results if r.status == "Fail"),
    }
