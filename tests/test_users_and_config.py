"""Tests for the user list and venue config routes."""
import json


def test_get_users_filters(client, auth_headers, make_user, players):
    make_user(name='Absent', is_attendance=False)
    client.post('/api/queue', json={'user_ids': players[:2]}, headers=auth_headers)

    everyone = json.loads(client.get('/api/users').data)['users']
    attending = json.loads(client.get('/api/users?attending=1').data)['users']
    ready = json.loads(client.get('/api/users?attending=1&ready=1').data)['users']

    assert 'Absent' in {u['name'] for u in everyone}
    assert 'Absent' not in {u['name'] for u in attending}
    assert not {u['id'] for u in ready} & set(players[:2])
    assert {u['id'] for u in ready} >= set(players[2:])


def test_inactive_users_are_hidden(client, make_user):
    make_user(name='Gone', is_active=False)
    names = {u['name'] for u in json.loads(client.get('/api/users').data)['users']}
    assert 'Gone' not in names


def test_get_config_defaults(client):
    res = client.get('/api/config')
    assert res.status_code == 200
    config = json.loads(res.data)['config']
    assert config['warning_time_minutes'] == 20
    assert config['danger_time_minutes'] == 30
    assert config['show_skill'] is True


def test_update_config(client, admin_headers, service):
    res = client.patch('/api/config', json={'warning_time_minutes': 15, 'show_sex': False},
                       headers=admin_headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['config']['warning_time_minutes'] == 15
    assert data['config']['show_sex'] is False
    assert service.board()['thresholds']['warning_time_minutes'] == 15


def test_update_config_requires_admin(client, auth_headers):
    res = client.patch('/api/config', json={'show_sex': False}, headers=auth_headers)
    assert res.status_code == 403


def test_update_config_validation(client, admin_headers):
    assert client.patch('/api/config', json={'color': 'red'}, headers=admin_headers).status_code == 400
    assert client.patch('/api/config', json={'show_sex': 'no'}, headers=admin_headers).status_code == 400
    assert client.patch('/api/config', json={'danger_time_minutes': 0}, headers=admin_headers).status_code == 400
    assert client.patch('/api/config', json={}, headers=admin_headers).status_code == 400
    res = client.patch('/api/config', json={'warning_time_minutes': 45}, headers=admin_headers)
    assert res.status_code == 409
