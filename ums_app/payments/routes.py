from flask import request
from flask_login import login_required, current_user

from . import payments_bp
from .. import get_ledger
from ..api_utils import api_success, json_body, page_args
from ..accounts.services import student_for_user
from ..decorators import role_required, FINANCE_ROLES
from ..errors import ValidationError


def _student_id(payload):
    student_id = payload.get("studentId")
    if student_id:
        return student_id
    own = student_for_user(current_user)
    if own is None:
        raise ValidationError("studentId is required")
    return own.regd_no


@payments_bp.route("/custom", methods=["POST"])
@login_required
def submit_custom():
    payload = json_body()
    payment = get_ledger().submit_custom_payment(
        _student_id(payload),
        payload.get("amount"),
        payload.get("paymentType"),
        payload.get("paymentMethod"),
        payload.get("transactionId"),
        actor=current_user,
        description=payload.get("description"),
        semester=payload.get("semester"),
        academic_year=payload.get("academicYear"),
    )
    return api_success({"paymentId": payment.payment_id, "receiptNumber": None, "payment": payment.to_dict()}, status=201)


@payments_bp.route("/manual", methods=["POST"])
@login_required
@role_required(*FINANCE_ROLES)
def create_manual():
    payload = json_body()
    payment = get_ledger().create_manual_payment(
        current_user,
        payload.get("studentId"),
        payload.get("amount"),
        payload.get("paymentType"),
        payment_method=payload.get("paymentMethod") or "cash",
        due_date=payload.get("dueDate"),
        semester=payload.get("semester"),
        academic_year=payload.get("academicYear"),
        description=payload.get("description"),
    )
    return api_success(payment.to_dict(), status=201)


@payments_bp.route("/create-order", methods=["POST"])
@login_required
def create_order():
    payload = json_body()
    payment = get_ledger().create_gateway_order(
        current_user,
        _student_id(payload),
        payload.get("amount"),
        payload.get("paymentType"),
        gateway=payload.get("gateway") or "cashfree",
        semester=payload.get("semester"),
        academic_year=payload.get("academicYear"),
        description=payload.get("description"),
    )
    return api_success({
        "paymentId": payment.payment_id,
        "orderId": payment.gateway_order_id,
        "orderToken": payment.gateway_order_token,
        "gateway": payment.gateway,
    }, status=201)


@payments_bp.route("/verify", methods=["POST"])
@login_required
def verify():
    payload = json_body()
    result = get_ledger().verify_gateway_payment(
        order_id=payload.get("orderId") or payload.get("razorpay_order_id"),
        gateway_payment_id=payload.get("gatewayPaymentId") or payload.get("razorpay_payment_id"),
        signature=payload.get("signature") or payload.get("razorpay_signature"),
        payment_id=payload.get("localPaymentId") or payload.get("paymentId"),
        actor=current_user,
    )
    return api_success(result.to_dict())


@payments_bp.route("/verify-custom", methods=["POST"])
@login_required
@role_required(*FINANCE_ROLES)
def verify_custom():
    payload = json_body()
    payment = get_ledger().review_custom_payment(
        current_user, payload.get("paymentId"), payload.get("action"), payload.get("notes"),
    )
    return api_success(payment.to_dict())


@payments_bp.route("/<int:payment_id>/status", methods=["PATCH"])
@login_required
@role_required(*FINANCE_ROLES)
def update_status(payment_id):
    payload = json_body()
    payment = get_ledger().update_status(current_user, payment_id, payload.get("status"))
    return api_success(payment.to_dict())


@payments_bp.route("/webhook", methods=["POST"])
def cashfree_webhook():
    return _webhook("cashfree")


@payments_bp.route("/webhook/<gateway>", methods=["POST"])
def gateway_webhook(gateway):
    return _webhook(gateway)


def _webhook(gateway):
    result = get_ledger().handle_webhook(gateway, request.get_data(), request.headers)
    if result is None:
        return api_success({"ignored": True})
    return api_success(result.to_dict())


@payments_bp.route("", methods=["GET"])
@payments_bp.route("/", methods=["GET"])
@login_required
@role_required(*FINANCE_ROLES)
def list_payments():
    page, limit = page_args()
    filters = {
        "status": request.args.get("status"),
        "payment_type": request.args.get("paymentType"),
        "payment_method": request.args.get("paymentMethod"),
        "gateway": request.args.get("gateway"),
        "regd_no": request.args.get("studentId"),
        "academic_year": request.args.get("academicYear"),
    }
    items, total = get_ledger().list_payments(filters, page=page, limit=limit)
    pages = (total + limit - 1) // limit
    return api_success([p.to_dict() for p in items], meta={"page": page, "limit": limit, "total": total, "pages": pages})


@payments_bp.route("/student/<regd_no>", methods=["GET"])
@login_required
def student_history(regd_no):
    payments = get_ledger().student_payments(regd_no, actor=current_user)
    return api_success([p.to_dict() for p in payments], meta={"count": len(payments)})


@payments_bp.route("/result/<order_id>", methods=["GET"])
@login_required
def order_result(order_id):
    payment = get_ledger().payment_by_order(order_id, actor=current_user)
    return api_success(payment.to_dict())


@payments_bp.route("/stats", methods=["GET"])
@login_required
@role_required(*FINANCE_ROLES)
def stats():
    return api_success(get_ledger().payment_stats())


@payments_bp.route("/<int:payment_id>", methods=["DELETE"])
@login_required
@role_required("head_admin", "finance_department")
def delete_payment(payment_id):
    get_ledger().delete_payment(current_user, payment_id)
    return api_success({"deleted": payment_id})
