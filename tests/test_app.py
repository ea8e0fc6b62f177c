"""
Tests for the Flask HTTP surface
"""

import os

import pytest

from app import create_app, create_flow
from intakeflow.core.catalog import load_catalog
from intakeflow.core.flow_state_machine import FlowStateMachine
from intakeflow.persistence import InMemoryFieldStore, InMemoryHistory, InMemoryPointerStore

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SAMPLE_CATALOG_PATH = os.path.join(ROOT, "data", "sample_catalog.json")


@pytest.fixture
def client():
    flow = FlowStateMachine(
        load_catalog(SAMPLE_CATALOG_PATH),
        InMemoryFieldStore(),
        InMemoryPointerStore(),
        InMemoryHistory(),
    )
    app = create_app(flow)
    app.config['TESTING'] = True
    return app.test_client()


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json() == {
        'status': 'ok',
        'catalog': 'small_business_intake',
        'version': '1.3.0',
    }


def test_turn_requires_user_id(client):
    response = client.post('/api/turn', json={'answer': 'hi'})
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_conversation_over_http(client):
    first = client.post('/api/turn', json={'user_id': 'u1', 'answer': ''}).get_json()
    assert first['success'] is True
    assert first['kind'] == 'prompt'
    assert first['question']['qid'] == 'Q001'
    assert first['section_key'] == '01'

    second = client.post('/api/turn', json={'user_id': 'u1', 'answer': 'Dana Levi'}).get_json()
    assert second['question']['qid'] == 'Q002'
    assert second['question']['options'] == ['quote', 'claim']

    error = client.post('/api/turn', json={'user_id': 'u1', 'answer': 'refund'}).get_json()
    assert error['question']['qid'] == 'Q002'
    assert 'quote, claim' in error['error']


def test_channel_prompt_variant(client):
    client.post('/api/turn', json={'user_id': 'u2', 'answer': ''})
    client.post('/api/turn', json={'user_id': 'u2', 'answer': 'Dana'})
    payload = client.post('/api/turn', json={'user_id': 'u2', 'answer': 'quote', 'channel': 'whatsapp'}).get_json()
    assert payload['question']['qid'] == 'Q003'
    assert payload['question']['prompt'] == 'Insure the building? yes / no'


def post_answers(client, user_id, *answers):
    payload = None
    for answer in answers:
        payload = client.post('/api/turn', json={'user_id': user_id, 'answer': answer}).get_json()
    return payload


def test_typed_false_answer_is_kept(client):
    payload = post_answers(client, 'u5', '', 'Dana', 'quote', False)
    assert 'error' not in payload
    assert payload['question']['qid'] == 'Q004'


def test_typed_zero_answer_is_kept(client):
    # Q011 (building age) accepts 0
    payload = post_answers(client, 'u6', '', 'Dana', 'quote', True, 'yes', 1000000, 0)
    assert 'error' not in payload
    assert payload['question']['qid'] == 'Q012'
    flow = client.application.config['FLOW']
    assert flow.fields.get_fields('u6', '02')['building_age'] == 0


def test_reset(client):
    client.post('/api/turn', json={'user_id': 'u3', 'answer': ''})
    assert client.post('/api/reset', json={'user_id': 'u3'}).get_json() == {'success': True}
    assert client.post('/api/reset', json={}).status_code == 400


def test_internal_error_is_generic(client):
    client.application.config['FLOW'].pointers = None
    response = client.post('/api/turn', json={'user_id': 'u4', 'answer': ''})
    assert response.status_code == 500
    assert response.get_json() == {'success': False, 'error': 'Something went wrong, please try again'}


def test_create_flow_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("INTAKEFLOW_CATALOG", SAMPLE_CATALOG_PATH)
    monkeypatch.setenv("INTAKEFLOW_DATA_DIR", str(tmp_path))
    flow = create_flow()
    assert flow.catalog.name == 'small_business_intake'
    assert (tmp_path / "pointers").is_dir()
