from flask import Blueprint, request, jsonify

from courtside.auth_utils import admin_required
from courtside.errors import OperationResult, QueueError
from courtside.models import VenueConfig
from courtside.routes.helpers import result_response
from courtside.services.queue_service import get_queue_service

settings_bp = Blueprint('settings', __name__)

THRESHOLD_FIELDS = ('warning_time_minutes', 'danger_time_minutes')


@settings_bp.route('', methods=['GET'])
def get_config():
    try:
        config = get_queue_service().repository.get_config()
    except QueueError as exc:
        return result_response(OperationResult.from_error(exc))
    return jsonify({'config': config.to_dict()})


@settings_bp.route('', methods=['PATCH'])
@admin_required
def update_config():
    data = request.get_json(silent=True) or {}
    fields = {}
    for name, value in data.items():
        if name not in VenueConfig.EDITABLE_FIELDS:
            return jsonify({'error': f'Unknown config field: {name}'}), 400
        if name in THRESHOLD_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                return jsonify({'error': f'{name} must be a positive integer'}), 400
        elif not isinstance(value, bool):
            return jsonify({'error': f'{name} must be true or false'}), 400
        fields[name] = value
    if not fields:
        return jsonify({'error': 'No config fields given'}), 400
    return result_response(get_queue_service().update_config(**fields))
