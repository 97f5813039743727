from io import BytesIO

from models import Notification


def _request(client, **overrides):
    payload = {'amount': '250', 'payment_method': 'bank_transfer', 'transaction_reference': 'BDO-1234'}
    payload.update(overrides)
    return client.post('/api/topups', json=payload)


def test_topup_limits(family, parent_client):
    assert _request(parent_client, amount='50').status_code == 400
    assert _request(parent_client, amount='60000').status_code == 400
    assert _request(parent_client, amount='abc').status_code == 400
    assert _request(parent_client, payment_method='gcash-cash').status_code == 400


def test_topup_approval_flow(app, family, parent_client, admin_client):
    response = _request(parent_client)
    assert response.status_code == 201
    topup = response.get_json()['topup']
    assert topup['status'] == 'pending'

    pending = admin_client.get('/admin/topups?status=pending').get_json()['topups']
    assert [t['id'] for t in pending] == [topup['id']]

    approved = admin_client.post(f"/admin/topups/{topup['id']}/approve", json={'admin_notes': 'Verified'})
    assert approved.status_code == 200
    assert approved.get_json()['topup']['status'] == 'completed'
    assert approved.get_json()['balance'] == 750.0

    again = admin_client.post(f"/admin/topups/{topup['id']}/approve")
    assert again.status_code == 409
    assert again.get_json()['code'] == 'already_processed'
    assert parent_client.get('/api/wallet').get_json()['balance'] == 750.0

    with app.app_context():
        assert Notification.query.filter_by(user_id=family.parent_id, type='topup_approved').count() == 1
        assert Notification.query.filter_by(user_id=None, type='topup_new').count() == 1


def test_decline_requires_reason(app, family, parent_client, admin_client):
    topup_id = _request(parent_client).get_json()['topup']['id']

    assert admin_client.post(f'/admin/topups/{topup_id}/decline', json={}).status_code == 400

    response = admin_client.post(f'/admin/topups/{topup_id}/decline', json={'reason': 'No matching deposit'})
    assert response.get_json()['topup']['status'] == 'declined'
    assert response.get_json()['topup']['admin_notes'] == 'No matching deposit'
    assert parent_client.get('/api/topups?status=declined').get_json()['topups'][0]['id'] == topup_id


def test_only_pending_or_declined_topups_can_be_deleted(family, parent_client, admin_client):
    topup_id = _request(parent_client).get_json()['topup']['id']
    admin_client.post(f'/admin/topups/{topup_id}/approve')
    assert admin_client.delete(f'/admin/topups/{topup_id}').status_code == 409

    pending_id = _request(parent_client).get_json()['topup']['id']
    assert admin_client.delete(f'/admin/topups/{pending_id}').status_code == 200


def test_topup_with_proof_upload(app, family, parent_client):
    response = parent_client.post('/api/topups', data={
        'amount': '1000',
        'payment_method': 'online',
        'proof': (BytesIO(b'\x89PNG proof'), 'receipt.png'),
    }, content_type='multipart/form-data')

    assert response.status_code == 201
    assert response.get_json()['topup']['proof_image_url'].startswith('/uploads/proofs/')


def test_topup_stats(family, parent_client, admin_client):
    _request(parent_client, amount='200')
    _request(parent_client, amount='300')

    stats = admin_client.get('/admin/topups/stats').get_json()['stats']

    assert stats['pending_count'] == 2
    assert stats['pending_today'] == 2
    assert stats['pending_amount'] == 500.0
    assert stats['by_status']['pending'] == {'count': 2, 'amount': 500.0}


def test_admin_adjusts_balance(family, admin_client, parent_client):
    response = admin_client.post(f'/admin/parents/{family.parent_id}/adjust-balance',
                                 json={'amount': '-120.50', 'reason': 'Duplicate top-up'})
    assert response.status_code == 200
    assert response.get_json()['balance'] == 379.5

    too_much = admin_client.post(f'/admin/parents/{family.parent_id}/adjust-balance',
                                 json={'amount': '-1000', 'reason': 'Oops'})
    assert too_much.status_code == 402

    no_reason = admin_client.post(f'/admin/parents/{family.parent_id}/adjust-balance', json={'amount': '10'})
    assert no_reason.status_code == 400

    history = parent_client.get('/api/wallet/transactions?reason=adjustment').get_json()
    assert history['total'] == 1
    assert history['transactions'][0]['amount'] == -120.5


def test_non_finite_amounts_are_rejected(family, parent_client, admin_client):
    for literal in ('NaN', 'Infinity'):
        response = parent_client.post('/api/topups', data=f'{{"amount": {literal}, "payment_method": "cash"}}',
                                      content_type='application/json')
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Amount must be a number'

    adjust = admin_client.post(f'/admin/parents/{family.parent_id}/adjust-balance',
                               data='{"amount": NaN, "reason": "Correction"}', content_type='application/json')
    assert adjust.status_code == 400
