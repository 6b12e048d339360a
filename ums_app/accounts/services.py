from sqlalchemy import select
from werkzeug.security import generate_password_hash, check_password_hash

from .. import db
from ..models import User, Student, Faculty, PasswordChangeLog
from ..errors import ValidationError, NotFoundError, ConflictError, PermissionDenied
from ..decorators import user_role

MIN_PASSWORD_LENGTH = 6


def authenticate(username, password):
    user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        return None
    if not user.is_active:
        return None
    return user


def student_for_user(user):
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return db.session.execute(select(Student).filter_by(user_id_fk=user.user_id)).scalars().first()


def get_student(regd_no):
    student = db.session.get(Student, regd_no) if regd_no else None
    if student is None:
        raise NotFoundError("Student not found")
    return student


def ensure_student_access(actor, regd_no, staff_roles):
    """Staff in ``staff_roles`` may act for anyone; a student only for themselves."""
    if actor is None:
        return
    role = user_role(actor)
    if role in staff_roles:
        return
    if role == "student":
        own = student_for_user(actor)
        if own is not None and own.regd_no == regd_no:
            return
    raise PermissionDenied("You do not have permission to access this student's records.")


class Account:
    """Credential capability shared by every kind of login."""

    kind = "account"

    def __init__(self, user):
        self.user = user

    @classmethod
    def load(cls, ident):
        raise NotImplementedError

    def _log(self, actor, method, note):
        db.session.add(PasswordChangeLog(
            user_id_fk=self.user.user_id,
            changed_by_user_id_fk=actor.user_id if actor is not None else self.user.user_id,
            method=method,
            note=note,
        ))

    def change_password(self, new_password, actor=None):
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        self.user.password_hash = generate_password_hash(new_password)
        self._log(actor, "password", f"{self.kind} password changed")
        db.session.commit()
        return self.user

    def change_username(self, new_username, actor=None):
        new_username = (new_username or "").strip()
        if not new_username:
            raise ValidationError("Username is required")
        if new_username == self.user.username:
            return self.user
        taken = db.session.execute(select(User).filter_by(username=new_username)).scalars().first()
        if taken is not None:
            raise ConflictError("Username already exists")
        old = self.user.username
        self.user.username = new_username
        self._log(actor, "username", f"{old} -> {new_username}")
        db.session.commit()
        return self.user


class AdminAccount(Account):
    kind = "admin"

    @classmethod
    def load(cls, ident):
        try:
            user = db.session.get(User, int(ident))
        except (TypeError, ValueError):
            user = None
        if user is None or user.role in ("student", "faculty"):
            raise NotFoundError("Admin user not found")
        return cls(user)


class FacultyAccount(Account):
    kind = "faculty"

    @classmethod
    def load(cls, ident):
        try:
            faculty = db.session.get(Faculty, int(ident))
        except (TypeError, ValueError):
            faculty = None
        if faculty is None or faculty.user_id_fk is None:
            raise NotFoundError("Faculty not found")
        return cls(db.session.get(User, faculty.user_id_fk))


class StudentAccount(Account):
    kind = "student"

    @classmethod
    def load(cls, ident):
        student = db.session.get(Student, ident) if ident else None
        if student is None or student.user_id_fk is None:
            raise NotFoundError("Student not found")
        return cls(db.session.get(User, student.user_id_fk))

    def change_username(self, new_username, actor=None):
        raise ValidationError("Students sign in with their registration number; username cannot be changed")


ACCOUNT_KINDS = {
    "admin": AdminAccount,
    "faculty": FacultyAccount,
    "student": StudentAccount,
}


def account_for(user_type, ident):
    kind = ACCOUNT_KINDS.get((user_type or "").strip().lower())
    if kind is None:
        raise ValidationError("userType must be one of admin, faculty, student")
    return kind.load(ident)
