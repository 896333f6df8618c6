"""Socket.IO handlers for the live queue board."""
from flask_socketio import emit

from courtside.app import socketio
from courtside.services.queue_service import get_queue_service


@socketio.on('connect')
def on_connect(auth=None):
    emit('board_update', get_queue_service().board())


@socketio.on('request_board')
def on_request_board(data=None):
    service = get_queue_service()
    payload = data if isinstance(data, dict) else {}
    if payload.get('refresh'):
        service.refresh_all()
    emit('board_update', service.board())
