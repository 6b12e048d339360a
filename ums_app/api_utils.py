from flask import jsonify, request


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400):
    body = {"success": False, "error": {"code": code, "message": message}}
    return jsonify(body), status


def json_body():
    """Request JSON as a dict; malformed or missing bodies read as empty."""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def page_args(default_limit=10, max_limit=100):
    try:
        page = max(int(request.args.get("page", 1)), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (TypeError, ValueError):
        limit = default_limit
    return page, limit
