from datetime import datetime, timezone
from flask_login import UserMixin
from . import db


def utc_now():
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


PAYMENT_TYPES = ("academic", "hostel", "other")
PAYMENT_STATUSES = ("pending", "completed", "failed", "rejected")
EXAM_TYPES = ("Internal-1", "Internal-2", "Internal-3", "Mid-Term", "End-Semester", "Assignment", "Quiz", "Project")
PERIOD_STATUSES = ("Present", "Absent", "Late", "Excused")
DAILY_STATUSES = ("Present", "Absent", "Late")
CLASS_TYPES = ("Lecture", "Tutorial", "Practical", "Lab")

# ==========================================
# DIRECTORY
# ==========================================

class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(128), unique=True, nullable=False)
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    # head_admin, admin, student_management, finance_department, finance_officer, faculty, student
    role = db.Column(db.String(32), default="student")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    def get_id(self):
        return str(self.user_id)


class Student(db.Model):
    __tablename__ = "students"
    regd_no = db.Column(db.String(32), primary_key=True, nullable=False)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64))
    email = db.Column(db.String(128))
    mobile = db.Column(db.String(20))
    branch = db.Column(db.String(64))
    section = db.Column(db.String(10))
    semester = db.Column(db.Integer, default=1)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Faculty(db.Model):
    __tablename__ = "faculty"
    faculty_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    full_name = db.Column(db.String(128), nullable=False)
    employee_id = db.Column(db.String(32), unique=True)
    email = db.Column(db.String(128))
    department = db.Column(db.String(64))
    designation = db.Column(db.String(64))
    is_active = db.Column(db.Boolean, default=True)


class PasswordChangeLog(db.Model):
    __tablename__ = "password_change_log"
    log_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    changed_by_user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    changed_at = db.Column(db.DateTime, default=utc_now)
    method = db.Column(db.String(32))  # password | username
    note = db.Column(db.String(255))


# ==========================================
# PAYMENTS
# ==========================================

class Payment(db.Model):
    __tablename__ = "payments"
    payment_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_type = db.Column(db.String(16), nullable=False)
    payment_method = db.Column(db.String(16), default="online")
    # Sparse uniqueness: many rows carry NULL
    transaction_id = db.Column(db.String(64), unique=True)
    gateway = db.Column(db.String(16))  # cashfree | razorpay
    gateway_order_id = db.Column(db.String(64), unique=True)
    gateway_payment_id = db.Column(db.String(64))
    gateway_order_token = db.Column(db.String(255))
    status = db.Column(db.String(16), nullable=False, default="pending")
    payment_date = db.Column(db.DateTime, default=utc_now)
    paid_date = db.Column(db.DateTime)
    due_date = db.Column(db.Date)
    semester = db.Column(db.Integer)
    academic_year = db.Column(db.String(16))
    description = db.Column(db.Text)
    receipt_number = db.Column(db.String(32), unique=True)
    submitted_at = db.Column(db.DateTime)
    verified_by_user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    verified_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    auto_delete_at = db.Column(db.DateTime, index=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)
    version = db.Column(db.Integer, nullable=False)

    student = db.relationship("Student", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.payment_id,
            "studentId": self.regd_no,
            "amount": float(self.amount) if self.amount is not None else None,
            "paymentType": self.payment_type,
            "paymentMethod": self.payment_method,
            "transactionId": self.transaction_id,
            "gateway": self.gateway,
            "gatewayOrderId": self.gateway_order_id,
            "gatewayPaymentId": self.gateway_payment_id,
            "status": self.status,
            "paymentDate": _iso(self.payment_date),
            "paidDate": _iso(self.paid_date),
            "dueDate": _iso(self.due_date),
            "semester": self.semester,
            "academicYear": self.academic_year,
            "description": self.description,
            "receiptNumber": self.receipt_number,
            "verifiedBy": self.verified_by_user_id_fk,
            "verifiedAt": _iso(self.verified_at),
            "notes": self.notes,
            "rejectionReason": self.rejection_reason,
            "autoDeleteAt": _iso(self.auto_delete_at),
            "createdAt": _iso(self.created_at),
        }


# ==========================================
# COMMUNICATION
# ==========================================

class Notification(db.Model):
    __tablename__ = "notifications"
    notification_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), index=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), index=True)
    kind = db.Column(db.String(32), nullable=False)  # payment_update | payment_reminder | general
    title = db.Column(db.String(128), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data_json = db.Column(db.Text)
    # No FK: the row outlives a swept or deleted payment
    payment_id_ref = db.Column(db.Integer, index=True)
    amount = db.Column(db.Numeric(12, 2))
    payment_type = db.Column(db.String(16))
    receipt_number = db.Column(db.String(32))
    priority = db.Column(db.String(8), default="medium")
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    read_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            "id": self.notification_id,
            "studentId": self.regd_no,
            "type": self.kind,
            "title": self.title,
            "message": self.message,
            "paymentId": self.payment_id_ref,
            "amount": float(self.amount) if self.amount is not None else None,
            "paymentType": self.payment_type,
            "receiptNumber": self.receipt_number,
            "priority": self.priority,
            "isRead": bool(self.is_read),
            "createdAt": _iso(self.created_at),
        }


# ==========================================
# ATTENDANCE & ACADEMICS
# ==========================================

class AttendanceSummary(db.Model):
    __tablename__ = "attendance_summaries"
    attendance_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    academic_year = db.Column(db.String(16), nullable=False)
    overall_total_classes = db.Column(db.Integer, default=0)
    overall_attended_classes = db.Column(db.Integer, default=0)
    overall_percentage = db.Column(db.Float, default=0)
    overall_status = db.Column(db.String(16), default="Average")
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)
    version = db.Column(db.Integer, nullable=False)

    subjects = db.relationship(
        "AttendanceSubject", backref="summary", cascade="all, delete-orphan",
        order_by="AttendanceSubject.subject_row_id",
    )
    days = db.relationship(
        "AttendanceDay", backref="summary", cascade="all, delete-orphan",
        order_by="AttendanceDay.date",
    )

    __table_args__ = (
        db.UniqueConstraint("regd_no", "semester", "academic_year", name="uq_attendance_summary"),
    )
    __mapper_args__ = {"version_id_col": version}

    def subject(self, subject_code):
        for s in self.subjects:
            if s.subject_code == subject_code:
                return s
        return None

    def day(self, on_date):
        for d in self.days:
            if d.date == on_date:
                return d
        return None

    def to_dict(self):
        return {
            "id": self.attendance_id,
            "studentId": self.regd_no,
            "semester": self.semester,
            "academicYear": self.academic_year,
            "subjects": [s.to_dict() for s in self.subjects],
            "overallAttendance": {
                "totalClasses": self.overall_total_classes,
                "attendedClasses": self.overall_attended_classes,
                "percentage": self.overall_percentage,
                "status": self.overall_status,
            },
            "dailyAttendance": [d.to_dict() for d in self.days],
        }


class AttendanceSubject(db.Model):
    __tablename__ = "attendance_subjects"
    subject_row_id = db.Column(db.Integer, primary_key=True)
    attendance_id_fk = db.Column(db.Integer, db.ForeignKey("attendance_summaries.attendance_id"), nullable=False)
    subject_code = db.Column(db.String(32), nullable=False)
    subject_name = db.Column(db.String(128), nullable=False)
    total_classes = db.Column(db.Integer, default=0)
    attended_classes = db.Column(db.Integer, default=0)
    percentage = db.Column(db.Float, default=0)
    status = db.Column(db.String(16), default="Average")

    __table_args__ = (
        db.UniqueConstraint("attendance_id_fk", "subject_code", name="uq_attendance_subject"),
    )

    def to_dict(self):
        return {
            "subjectCode": self.subject_code,
            "subjectName": self.subject_name,
            "totalClasses": self.total_classes,
            "attendedClasses": self.attended_classes,
            "percentage": self.percentage,
            "status": self.status,
        }


class AttendanceDay(db.Model):
    __tablename__ = "attendance_days"
    day_id = db.Column(db.Integer, primary_key=True)
    attendance_id_fk = db.Column(db.Integer, db.ForeignKey("attendance_summaries.attendance_id"), nullable=False)
    date = db.Column(db.Date, nullable=False)

    entries = db.relationship(
        "AttendanceDayEntry", backref="day", cascade="all, delete-orphan",
        order_by="AttendanceDayEntry.entry_id",
    )

    __table_args__ = (
        db.UniqueConstraint("attendance_id_fk", "date", name="uq_attendance_day"),
    )

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "subjects": [
                {"subjectCode": e.subject_code, "subjectName": e.subject_name, "status": e.status, "period": e.period}
                for e in self.entries
            ],
        }


class AttendanceDayEntry(db.Model):
    __tablename__ = "attendance_day_entries"
    entry_id = db.Column(db.Integer, primary_key=True)
    day_id_fk = db.Column(db.Integer, db.ForeignKey("attendance_days.day_id"), nullable=False)
    subject_code = db.Column(db.String(32), nullable=False)
    subject_name = db.Column(db.String(128))
    status = db.Column(db.String(8), nullable=False)  # Present, Absent, Late
    period = db.Column(db.Integer)


class PeriodAttendance(db.Model):
    __tablename__ = "period_attendance"
    period_attendance_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), nullable=False)
    faculty_id_fk = db.Column(db.Integer, db.ForeignKey("faculty.faculty_id"), nullable=False)
    subject = db.Column(db.String(128), nullable=False)
    subject_code = db.Column(db.String(32), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    branch = db.Column(db.String(64), nullable=False)
    section = db.Column(db.String(10), nullable=False)
    date = db.Column(db.Date, nullable=False)
    period = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(8), nullable=False)  # Present, Absent, Late, Excused
    class_type = db.Column(db.String(16), default="Lecture")
    remarks = db.Column(db.String(255))
    academic_year = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("regd_no", "subject", "date", "period", "academic_year", name="uq_period_attendance"),
        db.Index("ix_period_attendance_faculty", "faculty_id_fk", "semester", "branch", "date"),
    )

    def to_dict(self):
        return {
            "id": self.period_attendance_id,
            "studentId": self.regd_no,
            "facultyId": self.faculty_id_fk,
            "subject": self.subject,
            "subjectCode": self.subject_code,
            "semester": self.semester,
            "branch": self.branch,
            "section": self.section,
            "date": self.date.isoformat(),
            "period": self.period,
            "status": self.status,
            "classType": self.class_type,
            "remarks": self.remarks,
            "academicYear": self.academic_year,
        }


# ==========================================
# MARKS & RESULTS
# ==========================================

class Marks(db.Model):
    __tablename__ = "marks"
    mark_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), nullable=False)
    faculty_id_fk = db.Column(db.Integer, db.ForeignKey("faculty.faculty_id"), nullable=False)
    subject = db.Column(db.String(128), nullable=False)
    subject_code = db.Column(db.String(32), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    branch = db.Column(db.String(64), nullable=False)
    section = db.Column(db.String(10), nullable=False)
    exam_type = db.Column(db.String(16), nullable=False)
    total_marks = db.Column(db.Float, nullable=False)
    obtained_marks = db.Column(db.Float, nullable=False)
    percentage = db.Column(db.Float)
    grade = db.Column(db.String(2))
    remarks = db.Column(db.String(255))
    academic_year = db.Column(db.String(16), nullable=False)
    exam_date = db.Column(db.Date, nullable=False)
    is_published = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("regd_no", "subject", "exam_type", "academic_year", name="uq_marks_exam"),
        db.Index("ix_marks_faculty", "faculty_id_fk", "semester", "branch"),
    )

    def to_dict(self):
        return {
            "id": self.mark_id,
            "studentId": self.regd_no,
            "facultyId": self.faculty_id_fk,
            "subject": self.subject,
            "subjectCode": self.subject_code,
            "semester": self.semester,
            "branch": self.branch,
            "section": self.section,
            "examType": self.exam_type,
            "totalMarks": self.total_marks,
            "obtainedMarks": self.obtained_marks,
            "percentage": self.percentage,
            "grade": self.grade,
            "remarks": self.remarks,
            "academicYear": self.academic_year,
            "dateOfExam": _iso(self.exam_date),
            "isPublished": bool(self.is_published),
        }


class Result(db.Model):
    __tablename__ = "results"
    result_id = db.Column(db.Integer, primary_key=True)
    regd_no = db.Column(db.String(32), db.ForeignKey("students.regd_no"), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    academic_year = db.Column(db.String(16), nullable=False)
    sgpa = db.Column(db.Float, default=0)
    total_credits = db.Column(db.Integer, default=0)
    earned_credits = db.Column(db.Integer, default=0)
    percentage = db.Column(db.Float, default=0)
    status = db.Column(db.String(8), default="Pending")  # Pass, Fail, Pending
    is_published = db.Column(db.Boolean, default=False)
    published_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    subjects = db.relationship(
        "ResultSubject", backref="semester_result", cascade="all, delete-orphan",
        order_by="ResultSubject.result_subject_id",
    )

    __table_args__ = (
        db.UniqueConstraint("regd_no", "semester", "academic_year", name="uq_result_semester"),
    )

    def to_dict(self):
        return {
            "id": self.result_id,
            "studentId": self.regd_no,
            "semester": self.semester,
            "academicYear": self.academic_year,
            "subjects": [s.to_dict() for s in self.subjects],
            "sgpa": self.sgpa,
            "totalCredits": self.total_credits,
            "earnedCredits": self.earned_credits,
            "percentage": self.percentage,
            "status": self.status,
            "isPublished": bool(self.is_published),
            "publishedDate": _iso(self.published_date),
        }


class ResultSubject(db.Model):
    __tablename__ = "result_subjects"
    result_subject_id = db.Column(db.Integer, primary_key=True)
    result_id_fk = db.Column(db.Integer, db.ForeignKey("results.result_id"), nullable=False)
    subject_code = db.Column(db.String(32), nullable=False)
    subject_name = db.Column(db.String(128), nullable=False)
    credits = db.Column(db.Integer, nullable=False)
    internal_marks = db.Column(db.Float, default=0)
    external_marks = db.Column(db.Float, default=0)
    total_marks = db.Column(db.Float)
    grade = db.Column(db.String(2))
    grade_points = db.Column(db.Integer)
    result = db.Column(db.String(4))  # Pass, Fail

    def to_dict(self):
        return {
            "subjectCode": self.subject_code,
            "subjectName": self.subject_name,
            "credits": self.credits,
            "marks": {"internal": self.internal_marks, "external": self.external_marks, "total": self.total_marks},
            "grade": self.grade,
            "gradePoints": self.grade_points,
            "result": self.result,
        }


def _iso(value):
    return value.isoformat() if value is not None else None
