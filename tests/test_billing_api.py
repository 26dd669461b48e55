from fastapi.testclient import TestClient

from storyboard_video.api.main import app

ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_recharge_and_balance() -> None:
    c = TestClient(app)

    payload = {
        "user_id": "alice",
        "amount": 100,
        "description": "manual top-up",
        "related_id": "ORDER-1",
    }
    r = c.post('/v1/admin/balance/recharge', json=payload, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['balance'] == 100

    rb = c.get('/v1/balance/alice')
    assert rb.status_code == 200
    data = rb.json()['data']
    assert data['balance']['balance'] == 100
    assert data['total'] == 1
    assert data['records'][0]['type'] == 'recharge'
    assert data['records'][0]['related_id'] == 'ORDER-1'


def test_redeem_entry_type() -> None:
    c = TestClient(app)
    r = c.post(
        '/v1/admin/balance/recharge',
        json={"user_id": "bob", "amount": 5, "entry_type": "redeem", "description": "code XYZ"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    assert c.get('/v1/balance/bob').json()['data']['records'][0]['type'] == 'redeem'


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/balance/recharge', json={"user_id": "x", "amount": 10})
    assert r.status_code == 401


def test_recharge_rejects_non_positive_amount() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/balance/recharge', json={"user_id": "x", "amount": 0}, headers=ADMIN)
    assert r.status_code == 422


def test_unknown_user_balance() -> None:
    c = TestClient(app)
    assert c.get('/v1/balance/nobody').status_code == 404
