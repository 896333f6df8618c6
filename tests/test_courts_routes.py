"""Tests for court routes and court activation side effects."""
import json


def test_get_courts(client, make_courts):
    courts = make_courts(2)
    res = client.get('/api/courts')
    assert res.status_code == 200
    data = json.loads(res.data)
    assert [c['id'] for c in data['courts']] == courts
    assert data['courts'][0]['name'] == f'Court {courts[0]}'


def test_update_court_requires_admin(client, auth_headers, make_courts):
    court_id = make_courts(1)[0]
    res = client.patch(f'/api/courts/{court_id}', json={'is_active': False}, headers=auth_headers)
    assert res.status_code == 403


def test_update_court_requires_flag(client, admin_headers, make_courts):
    court_id = make_courts(1)[0]
    res = client.patch(f'/api/courts/{court_id}', json={}, headers=admin_headers)
    assert res.status_code == 400


def test_update_unknown_court_is_404(client, admin_headers):
    res = client.patch('/api/courts/999', json={'is_active': False}, headers=admin_headers)
    assert res.status_code == 404


def test_deactivating_court_mid_countdown_releases_claim(client, auth_headers, admin_headers,
                                                         service, players, make_courts):
    court_id = make_courts(1)[0]
    res = client.post('/api/queue', json={'user_ids': players[:2]}, headers=auth_headers)
    game = json.loads(res.data)['game']
    assert game['court_id'] == court_id
    assert service.timers.has_countdown(court_id=court_id)

    res = client.patch(f'/api/courts/{court_id}', json={'is_active': False}, headers=admin_headers)
    assert res.status_code == 200
    assert json.loads(res.data)['court']['is_active'] is False

    assert not service.timers.has_countdown(court_id=court_id)
    board = json.loads(client.get('/api/queue').data)
    assert board['waiting_games'][0]['id'] == game['id']
    assert board['waiting_games'][0]['court_id'] is None
    assert board['courts'][0]['is_active'] is False


def test_activating_court_claims_for_waiting_game(client, auth_headers, admin_headers,
                                                  service, players, make_courts):
    court_id = make_courts(1, is_active=False)[0]
    game = json.loads(client.post('/api/queue', json={'user_ids': players[:2]},
                                  headers=auth_headers).data)['game']
    assert game['court_id'] is None

    res = client.patch(f'/api/courts/{court_id}', json={'is_active': True}, headers=admin_headers)
    assert res.status_code == 200

    board = json.loads(client.get('/api/queue').data)
    assert board['waiting_games'][0]['court_id'] == court_id
    assert service.timers.has_countdown(court_id=court_id)
    assert board['stats']['active_courts'] == 1
