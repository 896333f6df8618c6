from flask import Blueprint, request, jsonify

from courtside.errors import OperationResult, QueueError
from courtside.routes.helpers import parse_bool, result_response
from courtside.services.queue_service import get_queue_service

users_bp = Blueprint('users', __name__)


@users_bp.route('', methods=['GET'])
def get_users():
    try:
        users = get_queue_service().users(
            attending_only=parse_bool(request.args.get('attending')),
            ready_only=parse_bool(request.args.get('ready')),
        )
    except QueueError as exc:
        return result_response(OperationResult.from_error(exc))
    return jsonify({'users': [u.to_dict() for u in users]})
