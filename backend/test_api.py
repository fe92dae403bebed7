"""
HTTP surface tests, run against an in-memory database.
"""
import pytest
from fastapi.testclient import TestClient

from main import app, get_manager

CATALOGUE = {
    'subjects': [{'code': 'MATH'}, {'code': 'ART'}],
    'classes': [
        {'id': 'X-A', 'demands': [{'subject': 'MATH', 'hours': 3}]},
        {'id': 'X-B', 'demands': [{'subject': 'ART', 'hours': 2}]},
    ],
    'teachers': [
        {'id': 'T1', 'qualifications': [{'subject': 'MATH', 'classes': ['X-A']}]},
        {'id': 'T2', 'qualifications': [{'subject': 'ART', 'classes': ['X-A', 'X-B']}]},
    ],
}


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_root_and_health(client):
    assert client.get('/').json()['message'] == 'School Timetable API'

    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_regenerate_then_read_back(client):
    response = client.post('/regenerate', json={'scope': '2024/2025', 'catalogue': CATALOGUE})

    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'success'
    assert body['entries'] == 5
    assert body['inserted'] == 5
    assert body['generation'] == 1
    assert body['teacherLoad'] == {'T1': 3, 'T2': 2}
    assert body['timetable'] is None

    response = client.get('/timetable/2024/2025')
    assert response.status_code == 200
    persisted = response.json()
    assert persisted['scope'] == '2024/2025'
    assert persisted['generation'] == 1
    assert len(persisted['entries']) == 5
    assert persisted['entries'][0]['startTime'] == '08:00'
    assert persisted['entries'][0]['dayOfWeek'] == 'MONDAY'


def test_dry_run_does_not_persist(client):
    response = client.post(
        '/regenerate', json={'scope': '2024/2025', 'catalogue': CATALOGUE, 'dryRun': True}
    )

    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'dry_run'
    assert body['generation'] is None
    assert len(body['timetable']) == 5
    assert {e['day'] for e in body['timetable']} == {'MONDAY'}

    assert client.get('/timetable/2024/2025').json()['entries'] == []


def test_infeasible_request_returns_conflict(client):
    catalogue = {
        'subjects': [{'code': 'MATH'}],
        'classes': [
            {'id': 'A', 'demands': [{'subject': 'MATH', 'hours': 18}]},
            {'id': 'B', 'demands': [{'subject': 'MATH', 'hours': 18}]},
        ],
        'teachers': [{'id': 'T1', 'qualifications': [{'subject': 'MATH', 'classes': ['A', 'B']}]}],
    }
    response = client.post(
        '/regenerate', json={'scope': '2024/2025', 'catalogue': catalogue, 'maxBacktracks': 10}
    )

    assert response.status_code == 409
    detail = response.json()['detail']
    assert detail['kind'] == 'infeasible'
    assert sum(s['shortfall'] for s in detail['shortfalls']) == 1


def test_over_allocated_request_returns_422(client):
    catalogue = {
        'subjects': [{'code': 'MATH'}],
        'classes': [{'id': 'A', 'demands': [{'subject': 'MATH', 'hours': 36}]}],
        'teachers': [{'id': 'T1', 'qualifications': [{'subject': 'MATH', 'classes': ['A']}]}],
    }
    response = client.post('/regenerate', json={'scope': 's', 'catalogue': catalogue})

    assert response.status_code == 422
    assert response.json()['detail']['classes'] == [{'class': 'A', 'demanded': 36, 'available': 35}]


def test_bad_catalogue_returns_400(client):
    catalogue = dict(CATALOGUE, teachers=[])
    response = client.post('/regenerate', json={'scope': 's', 'catalogue': catalogue})

    assert response.status_code == 400
    detail = response.json()['detail']
    assert detail['kind'] == 'configuration'
    assert len(detail['problems']) == 2
