import pytest

from ums_app.academics.metrics import attendance_status, attendance_percentage, derive_attendance_fields
from ums_app.academics.services import record_daily_attendance, student_attendance
from ums_app.errors import NotFoundError, ValidationError
from ums_app.models import AttendanceSummary, PeriodAttendance, utc_now

DAY = [
    {"subjectCode": "CS301", "subjectName": "Operating Systems", "status": "Present"},
    {"subjectCode": "CS302", "subjectName": "Computer Networks", "status": "Absent"},
    {"subjectCode": "CS303", "subjectName": "Compilers", "status": "Late"},
]


def _counters(summary):
    return {s.subject_code: (s.total_classes, s.attended_classes) for s in summary.subjects}


@pytest.mark.parametrize("pct,status", [
    (95, "Excellent"), (85, "Good"), (77, "Average"), (70, "Poor"), (50, "Critical"),
    (90, "Excellent"), (80, "Good"), (75, "Average"), (65, "Poor"), (64.99, "Critical"),
])
def test_attendance_status_bands(pct, status):
    assert attendance_status(pct) == status


def test_attendance_percentage_handles_no_classes():
    assert attendance_percentage(0, 0) == 0
    assert attendance_percentage(2, 3) == 66.67


def test_derive_attendance_rollup():
    per_subject, overall = derive_attendance_fields([(10, 9), (10, 6), (0, 0)])
    assert per_subject == [(90.0, "Excellent"), (60.0, "Critical"), (0, "Critical")]
    assert overall == {"total_classes": 20, "attended_classes": 15, "percentage": 75.0, "status": "Average"}


def test_resubmitting_a_day_does_not_double_count(app, make_student):
    regd_no = make_student()
    with app.app_context():
        once = _counters(record_daily_attendance(regd_no, "2024-07-01", DAY, academic_year="2024"))
    with app.app_context():
        summary = record_daily_attendance(regd_no, "2024-07-01", DAY, academic_year="2024")
        assert _counters(summary) == once == {"CS301": (1, 1), "CS302": (1, 0), "CS303": (1, 0)}
        assert len(summary.days) == 1
        assert len(summary.days[0].entries) == 3
        assert AttendanceSummary.query.count() == 1


def test_new_dates_accumulate_and_rollup(app, make_student):
    regd_no = make_student(semester=5)
    with app.app_context():
        record_daily_attendance(regd_no, "2024-07-01", DAY, academic_year="2024")
        summary = record_daily_attendance(regd_no, "2024-07-02", [
            {"subjectCode": "CS301", "subjectName": "Operating Systems", "status": "Present"},
            {"subjectCode": "CS302", "subjectName": "Computer Networks", "status": "Present"},
        ], academic_year="2024")

        assert summary.semester == 5
        assert _counters(summary) == {"CS301": (2, 2), "CS302": (2, 1), "CS303": (1, 0)}
        os_subject = summary.subject("CS301")
        assert os_subject.percentage == 100.0
        assert os_subject.status == "Excellent"
        assert summary.subject("CS302").status == "Critical"
        assert summary.overall_total_classes == 5
        assert summary.overall_attended_classes == 3
        assert summary.overall_percentage == 60.0
        assert summary.overall_status == "Critical"


def test_correcting_a_day_diffs_old_and_new(app, make_student):
    regd_no = make_student()
    with app.app_context():
        record_daily_attendance(regd_no, "2024-07-01", DAY, academic_year="2024")
        corrected = [
            {"subjectCode": "CS301", "subjectName": "Operating Systems", "status": "Absent"},
            {"subjectCode": "CS302", "subjectName": "Computer Networks", "status": "Present"},
            {"subjectCode": "CS304", "subjectName": "Graphics", "status": "Present"},
        ]
        summary = record_daily_attendance(regd_no, "2024-07-01", corrected, academic_year="2024")

        # CS303 dropped from the day, CS304 added to it
        assert _counters(summary) == {"CS301": (1, 0), "CS302": (1, 1), "CS303": (0, 0), "CS304": (1, 1)}
        assert sorted(e.subject_code for e in summary.day(summary.days[0].date).entries) == ["CS301", "CS302", "CS304"]
        assert summary.overall_total_classes == 3
        assert summary.overall_attended_classes == 2


def test_daily_attendance_validation(app, make_student):
    regd_no = make_student()
    with app.app_context():
        with pytest.raises(NotFoundError):
            record_daily_attendance("NOPE", "2024-07-01", DAY)
        with pytest.raises(ValidationError):
            record_daily_attendance(regd_no, "2024-07-01", [])
        with pytest.raises(ValidationError):
            record_daily_attendance(regd_no, "01/07/2024", DAY)
        with pytest.raises(ValidationError):
            record_daily_attendance(regd_no, "2024-07-01", [{"subjectCode": "CS301", "subjectName": "OS", "status": "Excused"}])
        with pytest.raises(ValidationError):
            record_daily_attendance(regd_no, "2024-07-01", DAY + DAY[:1])
        assert AttendanceSummary.query.count() == 0


def test_student_attendance_overall(app, make_student):
    regd_no = make_student()
    with app.app_context():
        record_daily_attendance(regd_no, "2024-07-01", DAY, academic_year="2024")
        summaries, overall = student_attendance(regd_no)
        assert len(summaries) == 1
        assert overall == {"totalClasses": 3, "attendedClasses": 1, "percentage": 33.33, "status": "Critical"}


def test_daily_attendance_over_http(app, client, make_student, make_faculty, login):
    regd_no = make_student()
    other = make_student("21CS002")
    make_faculty("prof.iyer")

    login("prof.iyer")
    payload = {"studentId": regd_no, "date": "2024-07-01", "subjects": DAY, "academicYear": "2024"}
    assert client.post("/attendance/daily", json=payload).status_code == 200
    resp = client.post("/attendance/daily", json=payload)
    data = resp.get_json()["data"]
    assert data["overallAttendance"] == {"totalClasses": 3, "attendedClasses": 1, "percentage": 33.33, "status": "Critical"}

    client.post("/logout")
    login(regd_no)
    own = client.get(f"/attendance/student/{regd_no}").get_json()
    assert own["meta"]["overall"]["totalClasses"] == 3
    assert client.get(f"/attendance/student/{other}").status_code == 403
    assert client.post("/attendance/daily", json=payload).status_code == 403


def test_period_attendance_upsert(app, client, make_student, make_faculty, login):
    first = make_student("21CS001")
    second = make_student("21CS002")
    faculty_id = make_faculty("prof.iyer")
    login("prof.iyer")

    payload = {
        "subject": "Operating Systems", "subjectCode": "CS301", "semester": 3, "branch": "CSE", "section": "A",
        "date": "2024-07-01", "period": 2, "academicYear": "2024", "classType": "Lecture",
        "attendanceData": [
            {"studentId": first, "status": "Present"},
            {"studentId": second, "status": "Absent"},
        ],
    }
    assert client.post("/faculty/attendance", json=payload).status_code == 200

    payload["attendanceData"] = [{"studentId": second, "status": "Excused", "remarks": "Medical leave"}]
    resp = client.post("/faculty/attendance", json=payload)
    assert resp.status_code == 200

    with app.app_context():
        rows = {r.regd_no: r for r in PeriodAttendance.query.all()}
        assert len(rows) == 2
        assert rows[second].status == "Excused"
        assert rows[second].remarks == "Medical leave"
        assert rows[first].status == "Present"

    listed = client.get(f"/faculty/attendance/{faculty_id}?date=2024-07-01").get_json()
    assert listed["meta"]["count"] == 2

    payload["attendanceData"] = [{"studentId": first, "status": "Sleeping"}]
    assert client.post("/faculty/attendance", json=payload).status_code == 400


def test_back_dated_day_lands_in_current_academic_year(app, make_student):
    regd_no = make_student()
    with app.app_context():
        summary = record_daily_attendance(regd_no, "2020-12-15", DAY)
        assert summary.academic_year == str(utc_now().year)
        assert summary.days[0].date.isoformat() == "2020-12-15"

        override = record_daily_attendance(regd_no, "2020-12-15", DAY, academic_year="2020")
        assert override.academic_year == "2020"
        assert AttendanceSummary.query.count() == 2


def test_subject_taught_in_two_periods_counts_twice(app, make_student):
    regd_no = make_student()
    double = [
        {"subjectCode": "CS301", "subjectName": "Operating Systems", "status": "Present", "period": 1},
        {"subjectCode": "CS301", "subjectName": "Operating Systems", "status": "Absent", "period": 2},
    ]
    with app.app_context():
        summary = record_daily_attendance(regd_no, "2024-07-01", double, academic_year="2024")
        assert _counters(summary) == {"CS301": (2, 1)}
        assert sorted(e.period for e in summary.days[0].entries) == [1, 2]

        # Correcting period 2 only moves that entry's count
        double[1]["status"] = "Present"
        summary = record_daily_attendance(regd_no, "2024-07-01", double, academic_year="2024")
        assert _counters(summary) == {"CS301": (2, 2)}

        # Dropping period 2 removes one class
        summary = record_daily_attendance(regd_no, "2024-07-01", double[:1], academic_year="2024")
        assert _counters(summary) == {"CS301": (1, 1)}

        with pytest.raises(ValidationError):
            record_daily_attendance(regd_no, "2024-07-01", [double[0], dict(double[0])], academic_year="2024")
