from flask import Blueprint, request, jsonify

from courtside.auth_utils import admin_or_venue_setting, admin_required, login_required
from courtside.routes.helpers import result_response
from courtside.services.queue_service import get_queue_service

queue_bp = Blueprint('queue', __name__)


def _user_ids_from_body(data):
    user_ids = data.get('user_ids')
    if not isinstance(user_ids, list):
        return None
    return user_ids


@queue_bp.route('', methods=['GET'])
def get_board():
    return jsonify(get_queue_service().board())


@queue_bp.route('', methods=['POST'])
@login_required
def submit_group():
    data = request.get_json(silent=True) or {}
    user_ids = _user_ids_from_body(data)
    if user_ids is None:
        return jsonify({'error': 'user_ids must be a list'}), 400
    return result_response(get_queue_service().submit_group(user_ids), success_status=201)


@queue_bp.route('/refresh', methods=['POST'])
@login_required
def refresh_board():
    return result_response(get_queue_service().refresh())


@queue_bp.route('/<int:game_id>/finish', methods=['POST'])
@login_required
def finish_game(game_id):
    data = request.get_json(silent=True) or {}
    court_id = data.get('court_id')
    if court_id is not None:
        try:
            court_id = int(court_id)
        except (TypeError, ValueError):
            return jsonify({'error': 'court_id must be an integer'}), 400
    return result_response(get_queue_service().finish_game(game_id, court_id))


@queue_bp.route('/<int:game_id>/delay', methods=['POST'])
@login_required
def delay_game(game_id):
    return result_response(get_queue_service().delay_game(game_id))


@queue_bp.route('/<int:game_id>/revert', methods=['POST'])
@admin_or_venue_setting('enable_undo_game_by_user')
def revert_game(game_id):
    return result_response(get_queue_service().revert_to_queue(game_id))


@queue_bp.route('/<int:game_id>/players', methods=['PUT'])
@login_required
def edit_players(game_id):
    data = request.get_json(silent=True) or {}
    user_ids = _user_ids_from_body(data)
    if user_ids is None:
        return jsonify({'error': 'user_ids must be a list'}), 400
    return result_response(get_queue_service().edit_participants(game_id, user_ids))


@queue_bp.route('/<int:game_id>', methods=['DELETE'])
@admin_required
def delete_game(game_id):
    return result_response(get_queue_service().delete_game(game_id))
