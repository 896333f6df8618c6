from flask import Blueprint, request, jsonify

from courtside.auth_utils import admin_required
from courtside.routes.helpers import parse_bool, result_response
from courtside.services.queue_service import get_queue_service

courts_bp = Blueprint('courts', __name__)


@courts_bp.route('', methods=['GET'])
def get_courts():
    board = get_queue_service().board()
    return jsonify({
        'courts': board['courts'],
        'per_court_elapsed_seconds': board['per_court_elapsed_seconds'],
        'per_court_countdown_seconds': board['per_court_countdown_seconds'],
    })


@courts_bp.route('/<int:court_id>', methods=['PATCH'])
@admin_required
def update_court(court_id):
    data = request.get_json(silent=True) or {}
    if 'is_active' not in data:
        return jsonify({'error': 'is_active is required'}), 400
    return result_response(get_queue_service().set_court_active(court_id, parse_bool(data['is_active'])))
