from flask import jsonify

STATUS_BY_KIND = {
    'ok': 200,
    'noop': 200,
    'not_found': 404,
    'invalid_state': 409,
    'store_unavailable': 503,
}


def result_response(result, success_status=200):
    """Serialize an ``OperationResult`` with the HTTP status its kind maps to."""
    if result.ok and result.kind == 'ok':
        return jsonify(result.to_dict()), success_status
    return jsonify(result.to_dict()), STATUS_BY_KIND.get(result.kind, 500)


def parse_bool(raw):
    if isinstance(raw, bool):
        return raw
    return str(raw or '').strip().lower() in {'1', 'true', 'yes', 'on'}
