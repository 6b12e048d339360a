import json

from ..models import Notification, Student, utc_now
from .. import db
from ..errors import NotFoundError, PermissionDenied


def record_payment_notification(payment, title, message, priority="medium", kind="payment_update", data=None):
    """Queue a student notification for ``payment`` on the current session.

    The caller commits, so the notification lands together with the
    payment change or not at all.
    """
    note = Notification(
        regd_no=payment.regd_no,
        kind=kind,
        title=title,
        message=message,
        payment_id_ref=payment.payment_id,
        amount=payment.amount,
        payment_type=payment.payment_type,
        receipt_number=payment.receipt_number,
        priority=priority,
        data_json=json.dumps(data) if data else None,
    )
    db.session.add(note)
    return note


def notifications_for(user, unread_only=False, limit=50):
    q = Notification.query
    student = Student.query.filter_by(user_id_fk=user.user_id).first()
    if student is not None:
        q = q.filter(Notification.regd_no == student.regd_no)
    else:
        q = q.filter(Notification.user_id_fk == user.user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.notification_id.desc()).limit(limit).all()


def mark_read(user, notification_id):
    note = db.session.get(Notification, notification_id)
    if note is None:
        raise NotFoundError("Notification not found")
    student = Student.query.filter_by(user_id_fk=user.user_id).first()
    owns = (student is not None and note.regd_no == student.regd_no) or note.user_id_fk == user.user_id
    if not owns:
        raise PermissionDenied("Not your notification")
    if not note.is_read:
        note.is_read = True
        note.read_at = utc_now()
        db.session.commit()
    return note
