from flask import request
from flask_login import login_required, current_user

from . import academics_bp
from .services import (
    record_daily_attendance, student_attendance,
    record_class_attendance, faculty_period_attendance,
    record_marks, publish_marks, faculty_marks,
    save_result, publish_result, compute_result_summary,
    resolve_faculty,
)
from ..api_utils import api_success, json_body
from ..accounts.services import ensure_student_access
from ..decorators import role_required, user_role, STAFF_ROLES

ATTENDANCE_ROLES = ("faculty", "admin", "head_admin", "student_management")
MARKS_ROLES = ("faculty", "admin", "head_admin")
RESULT_ROLES = ("admin", "head_admin", "student_management")


def _acting_faculty(faculty_id=None):
    return resolve_faculty(current_user, faculty_id)


# ==========================================
# ATTENDANCE
# ==========================================

@academics_bp.route("/attendance/daily", methods=["POST"])
@login_required
@role_required(*ATTENDANCE_ROLES)
def daily_attendance():
    payload = json_body()
    summary = record_daily_attendance(
        payload.get("studentId"),
        payload.get("date"),
        payload.get("subjects"),
        academic_year=payload.get("academicYear"),
    )
    return api_success(summary.to_dict())


@academics_bp.route("/attendance/student/<regd_no>", methods=["GET"])
@login_required
def attendance_for_student(regd_no):
    ensure_student_access(current_user, regd_no, STAFF_ROLES)
    summaries, overall = student_attendance(
        regd_no, semester=request.args.get("semester"), academic_year=request.args.get("academicYear"),
    )
    return api_success([s.to_dict() for s in summaries], meta={"overall": overall})


@academics_bp.route("/faculty/attendance", methods=["POST"])
@login_required
@role_required(*ATTENDANCE_ROLES)
def class_attendance():
    payload = json_body()
    faculty = _acting_faculty(payload.get("facultyId"))
    records = record_class_attendance(faculty, payload, payload.get("attendanceData"))
    return api_success([r.to_dict() for r in records], meta={"count": len(records)})


@academics_bp.route("/faculty/attendance/<int:faculty_id>", methods=["GET"])
@login_required
@role_required(*ATTENDANCE_ROLES)
def class_attendance_history(faculty_id):
    faculty = _acting_faculty(faculty_id)
    rows = faculty_period_attendance(faculty, {
        "date": request.args.get("date"),
        "subject": request.args.get("subject"),
        "semester": request.args.get("semester"),
        "branch": request.args.get("branch"),
        "section": request.args.get("section"),
    })
    return api_success([r.to_dict() for r in rows], meta={"count": len(rows)})


# ==========================================
# MARKS
# ==========================================

@academics_bp.route("/faculty/marks", methods=["POST"])
@login_required
@role_required(*MARKS_ROLES)
def submit_marks():
    payload = json_body()
    faculty = _acting_faculty(payload.get("facultyId"))
    mark = record_marks(
        faculty,
        payload.get("studentId"),
        payload.get("subject"),
        payload.get("subjectCode"),
        payload.get("examType"),
        payload.get("academicYear"),
        payload.get("obtainedMarks"),
        payload.get("totalMarks"),
        payload.get("semester"),
        payload.get("branch"),
        payload.get("section"),
        payload.get("dateOfExam"),
        remarks=payload.get("remarks"),
    )
    return api_success(mark.to_dict())


@academics_bp.route("/faculty/marks/<int:faculty_id>", methods=["GET"])
@login_required
@role_required(*MARKS_ROLES)
def marks_for_faculty(faculty_id):
    faculty = _acting_faculty(faculty_id)
    rows = faculty_marks(faculty, {
        "subject": request.args.get("subject"),
        "semester": request.args.get("semester"),
        "branch": request.args.get("branch"),
        "section": request.args.get("section"),
        "exam_type": request.args.get("examType"),
        "academic_year": request.args.get("academicYear"),
    })
    return api_success([m.to_dict() for m in rows], meta={"count": len(rows)})


@academics_bp.route("/faculty/marks/publish/<int:mark_id>", methods=["PUT"])
@login_required
@role_required(*MARKS_ROLES)
def publish_mark(mark_id):
    faculty = _acting_faculty() if user_role(current_user) == "faculty" else None
    mark = publish_marks(mark_id, faculty=faculty)
    return api_success(mark.to_dict())


# ==========================================
# RESULTS
# ==========================================

@academics_bp.route("/results", methods=["POST"])
@login_required
@role_required(*RESULT_ROLES)
def submit_result():
    payload = json_body()
    result = save_result(
        payload.get("studentId"), payload.get("semester"), payload.get("academicYear"), payload.get("subjects"),
    )
    return api_success(result.to_dict())


@academics_bp.route("/results/<int:result_id>/publish", methods=["POST"])
@login_required
@role_required(*RESULT_ROLES)
def publish_semester_result(result_id):
    return api_success(publish_result(result_id).to_dict())


@academics_bp.route("/results/student/<regd_no>", methods=["GET"])
@login_required
def results_for_student(regd_no):
    ensure_student_access(current_user, regd_no, STAFF_ROLES)
    # Students only ever see published results
    results, summary = compute_result_summary(regd_no, published_only=user_role(current_user) == "student")
    return api_success([r.to_dict() for r in results], meta={"summary": summary})
