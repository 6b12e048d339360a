import pytest

from ums_app import db
from ums_app.academics.metrics import (
    compute_cgpa, derive_marks_fields, derive_result_fields, marks_grade, result_grade,
)
from ums_app.academics.services import compute_result_summary, save_result
from ums_app.errors import ValidationError
from ums_app.models import Marks, Result, User

MARKS = {
    "studentId": "21CS001", "subject": "Operating Systems", "subjectCode": "CS301", "examType": "Mid-Term",
    "academicYear": "2024", "semester": 3, "branch": "CSE", "section": "A", "dateOfExam": "2024-09-10",
    "obtainedMarks": 42, "totalMarks": 50,
}


@pytest.mark.parametrize("obtained,grade", [
    (95, "A+"), (85, "A"), (75, "B+"), (65, "B"), (55, "C+"), (45, "C"), (36, "D"), (20, "F"),
])
def test_marks_grade_bands(obtained, grade):
    assert derive_marks_fields(obtained, 100)["grade"] == grade


def test_marks_grade_boundaries():
    assert marks_grade(90) == "A+"
    assert marks_grade(89.99) == "A"
    assert marks_grade(35) == "D"
    assert marks_grade(34.99) == "F"
    assert derive_marks_fields(2, 3) == {"percentage": 66.67, "grade": "B"}


def test_result_derivation():
    rows, summary = derive_result_fields([
        {"code": "CS301", "credits": 4, "internal": 25, "external": 60},
        {"code": "CS302", "credits": 3, "internal": 20, "external": 52},
    ])
    assert [(r["total"], r["grade"], r["grade_points"], r["result"]) for r in rows] == [
        (85, "A", 9, "Pass"), (72, "B+", 8, "Pass"),
    ]
    assert summary == {"sgpa": 8.57, "total_credits": 7, "earned_credits": 7, "percentage": 78.5, "status": "Pass"}


def test_failed_subject_fails_semester():
    _, summary = derive_result_fields([
        {"code": "CS301", "credits": 4, "internal": 25, "external": 60},
        {"code": "CS302", "credits": 3, "internal": 10, "external": 20},
    ])
    assert result_grade(30) == ("F", 0)
    assert summary["status"] == "Fail"
    assert summary["earned_credits"] == 0


def test_cgpa_counts_only_passed_semesters():
    results = [("Pass", 8.0, 20), ("Fail", 0, 0), ("Pass", 9.0, 22)]
    assert compute_cgpa(results) == 8.52
    assert compute_cgpa([("Fail", 6.0, 0)]) == 0
    assert compute_cgpa([]) == 0


def test_result_summary_from_stored_results(app, make_student):
    regd_no = make_student()
    with app.app_context():
        db.session.add_all([
            Result(regd_no=regd_no, semester=1, academic_year="2022", sgpa=8.0, total_credits=20, earned_credits=20, status="Pass"),
            Result(regd_no=regd_no, semester=2, academic_year="2023", sgpa=0, total_credits=22, earned_credits=0, status="Fail"),
            Result(regd_no=regd_no, semester=3, academic_year="2023", sgpa=9.0, total_credits=22, earned_credits=22, status="Pass"),
        ])
        db.session.commit()

        results, summary = compute_result_summary(regd_no)
        assert [r.semester for r in results] == [1, 2, 3]
        assert summary == {
            "totalSemesters": 3, "totalCredits": 42, "overallCGPA": 8.52, "passedSemesters": 2, "failedSemesters": 1,
        }


def test_save_result_upserts(app, make_student):
    regd_no = make_student()
    subjects = [
        {"subjectCode": "CS301", "subjectName": "Operating Systems", "credits": 4, "marks": {"internal": 25, "external": 60}},
        {"subjectCode": "CS302", "subjectName": "Computer Networks", "credits": 3, "marks": {"internal": 10, "external": 20}},
    ]
    with app.app_context():
        first = save_result(regd_no, 3, "2024", subjects)
        assert first.status == "Fail"
        assert first.earned_credits == 0

        subjects[1]["marks"] = {"internal": 20, "external": 52}
        second = save_result(regd_no, 3, "2024", subjects)
        assert second.result_id == first.result_id
        assert second.status == "Pass"
        assert second.sgpa == 8.57
        assert [s.grade for s in second.subjects] == ["A", "B+"]
        assert Result.query.count() == 1

        with pytest.raises(ValidationError):
            save_result(regd_no, 3, "2024", [{"subjectCode": "X", "subjectName": "Y", "credits": 0}])


def test_marks_upsert_and_publish(app, client, make_student, make_faculty, login):
    make_student("21CS001")
    faculty_id = make_faculty("prof.iyer")
    login("prof.iyer")

    resp = client.post("/faculty/marks", json=MARKS)
    assert resp.status_code == 200
    first = resp.get_json()["data"]
    assert first["percentage"] == 84.0
    assert first["grade"] == "A"
    assert first["isPublished"] is False

    resp = client.post("/faculty/marks", json=dict(MARKS, obtainedMarks=46, remarks="Re-evaluated"))
    second = resp.get_json()["data"]
    assert second["id"] == first["id"]
    assert second["grade"] == "A+"
    assert second["remarks"] == "Re-evaluated"

    with app.app_context():
        assert Marks.query.count() == 1

    listed = client.get(f"/faculty/marks/{faculty_id}?examType=Mid-Term").get_json()
    assert listed["meta"]["count"] == 1

    published = client.put(f"/faculty/marks/publish/{first['id']}").get_json()["data"]
    assert published["isPublished"] is True
    # Publishing again keeps it published
    assert client.put(f"/faculty/marks/publish/{first['id']}").get_json()["data"]["isPublished"] is True


def test_marks_validation(app, client, make_student, make_faculty, login):
    make_student("21CS001")
    make_faculty("prof.iyer")
    login("prof.iyer")

    assert client.post("/faculty/marks", json=dict(MARKS, obtainedMarks=60)).status_code == 400
    assert client.post("/faculty/marks", json=dict(MARKS, totalMarks=0)).status_code == 400
    assert client.post("/faculty/marks", json=dict(MARKS, examType="Viva")).status_code == 400
    assert client.post("/faculty/marks", json=dict(MARKS, studentId="NOPE")).status_code == 404


def test_faculty_cannot_publish_colleagues_marks(app, client, make_student, make_faculty, login):
    make_student("21CS001")
    make_faculty("prof.iyer")
    make_faculty("prof.khan", full_name="Imran Khan")

    login("prof.iyer")
    mark_id = client.post("/faculty/marks", json=MARKS).get_json()["data"]["id"]
    client.post("/logout")

    login("prof.khan")
    assert client.put(f"/faculty/marks/publish/{mark_id}").status_code == 403


def test_results_visible_to_student_only_when_published(app, client, make_student, make_user, login):
    regd_no = make_student()
    make_user("registrar", role="student_management")
    login("registrar")
    result_id = client.post("/results", json={
        "studentId": regd_no, "semester": 1, "academicYear": "2023",
        "subjects": [{"subjectCode": "CS101", "subjectName": "Programming", "credits": 4,
                      "marks": {"internal": 30, "external": 62}}],
    }).get_json()["data"]["id"]
    client.post("/logout")

    login(regd_no)
    hidden = client.get(f"/results/student/{regd_no}").get_json()
    assert hidden["data"] == []
    assert hidden["meta"]["summary"]["overallCGPA"] == 0
    client.post("/logout")

    login("registrar")
    assert client.post(f"/results/{result_id}/publish").get_json()["data"]["isPublished"] is True
    client.post("/logout")

    login(regd_no)
    shown = client.get(f"/results/student/{regd_no}").get_json()
    assert len(shown["data"]) == 1
    assert shown["meta"]["summary"]["overallCGPA"] == 10.0


def test_mixed_case_student_role_still_hides_unpublished_results(app, client, make_student, make_user, login):
    regd_no = make_student()
    with app.app_context():
        user = User.query.filter_by(username=regd_no).first()
        user.role = " Student"
        db.session.commit()
        save_result(regd_no, 1, "2023", [
            {"subjectCode": "CS101", "subjectName": "Programming", "credits": 4,
             "marks": {"internal": 30, "external": 62}},
        ])

    login(regd_no)
    resp = client.get(f"/results/student/{regd_no}")
    assert resp.status_code == 200
    assert resp.get_json()["data"] == []
