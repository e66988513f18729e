import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from conftest import add_user, login, set_settings


def create_program(admin_client, **overrides):
    payload = {'title': 'Certification Track', 'enrollment_fee': 100}
    payload.update(overrides)
    response = admin_client.post('/api/admin/programs', json=payload)
    assert response.status_code == 201
    return response.get_json()['programId']


def create_coupon(admin_client, **fields):
    response = admin_client.post('/api/admin/coupons', json=fields)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['code']


def validate(client, code, amount):
    return client.post('/api/coupons/validate', json={'code': code, 'amount': amount})


def test_free_program_enrolls_immediately(student_client, admin_client):
    program_id = create_program(admin_client, enrollment_fee=0)
    assert student_client.post('/api/programs/enroll', json={'programId': program_id}).status_code == 200
    programs = student_client.get('/api/programs').get_json()['programs']
    assert programs[0]['isEnrolled'] is True
    assert programs[0]['enrolled_count'] == 1

    again = student_client.post('/api/programs/enroll', json={'programId': program_id})
    assert again.status_code == 400


def test_paid_program_requires_payment(student_client, admin_client):
    program_id = create_program(admin_client)
    response = student_client.post('/api/programs/enroll', json={'programId': program_id})
    assert response.status_code == 402
    body = response.get_json()
    assert body['requiresPayment'] is True
    assert body['amount'] == 100
    assert body['currency'] == 'USD'


def test_full_program(app, student_client, admin_client):
    program_id = create_program(admin_client, enrollment_fee=0, max_students=1)
    add_user(app, 'first@test.local')
    first = app.test_client()
    login(first, 'first@test.local', 'studentpass1')
    assert first.post('/api/programs/enroll', json={'programId': program_id}).status_code == 200

    response = student_client.post('/api/programs/enroll', json={'programId': program_id})
    assert response.status_code == 409


def test_cancel_enrollment(student_client, admin_client):
    program_id = create_program(admin_client, enrollment_fee=0)
    student_client.post('/api/programs/enroll', json={'programId': program_id})
    response = student_client.delete('/api/programs/enroll', query_string={'programId': program_id})
    assert response.status_code == 200
    assert student_client.delete('/api/programs/enroll', query_string={'programId': program_id}).status_code == 404
    assert student_client.post('/api/programs/enroll', json={'programId': program_id}).status_code == 200


@pytest.mark.parametrize('fields, amount, discount', [
    ({'discount_type': 'percentage', 'discount_value': 20}, 100, 20),
    ({'discount_type': 'percentage', 'discount_value': 50, 'max_discount': 15}, 100, 15),
    ({'discount_type': 'fixed', 'discount_value': 30}, 100, 30),
    ({'discount_type': 'fixed', 'discount_value': 150}, 100, 100),
])
def test_coupon_discounts(student_client, admin_client, fields, amount, discount):
    code = create_coupon(admin_client, code='promo', **fields)
    assert code == 'PROMO'
    body = validate(student_client, 'promo', amount).get_json()
    assert body['valid'] is True
    assert body['discountAmount'] == discount
    assert body['finalAmount'] == amount - discount


def test_coupon_rejections(student_client, admin_client):
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    create_coupon(admin_client, code='OLD', discount_value=10, valid_until=past)
    create_coupon(admin_client, code='OFF', discount_value=10, is_active=False)
    create_coupon(admin_client, code='BIG', discount_value=10, min_amount=500)

    for code, message in [('OLD', 'Coupon has expired'), ('OFF', 'Invalid or inactive coupon code'),
                          ('NONE', 'Invalid or inactive coupon code')]:
        response = validate(student_client, code, 100)
        assert response.status_code == 400
        assert response.get_json() == {'success': False, 'message': message, 'valid': False}

    assert 'Minimum amount' in validate(student_client, 'BIG', 100).get_json()['message']


def test_duplicate_coupon_code(admin_client):
    create_coupon(admin_client, code='ONCE', discount_value=5)
    assert admin_client.post('/api/admin/coupons', json={'code': 'once', 'discount_value': 5}).status_code == 409
    assert [c['code'] for c in admin_client.get('/api/admin/coupons').get_json()['coupons']] == ['ONCE']


def test_manual_payment_approval_enrolls_and_consumes_coupon(student_client, admin_client):
    program_id = create_program(admin_client)
    create_coupon(admin_client, code='SAVE10', discount_type='fixed', discount_value=10, max_uses=1)

    response = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'bank_transfer', 'reference': 'TX-1', 'couponCode': 'save10',
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body['status'] == 'pending'
    assert body['finalAmount'] == 90

    duplicate = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'bank_transfer', 'reference': 'TX-2',
    })
    assert duplicate.status_code == 409

    mine = student_client.get('/api/payments').get_json()['payments']
    assert [p['id'] for p in mine] == [body['transactionId']]

    approved = admin_client.post('/api/payments/approve', json={
        'transactionId': body['transactionId'], 'approve': True, 'notes': 'checked',
    })
    assert approved.status_code == 200
    assert approved.get_json()['status'] == 'approved'

    programs = student_client.get('/api/programs').get_json()['programs']
    assert programs[0]['isEnrolled'] is True
    coupon = admin_client.get('/api/admin/coupons').get_json()['coupons'][0]
    assert coupon['used_count'] == 1
    assert validate(student_client, 'SAVE10', 100).get_json()['message'] == 'Coupon usage limit reached'

    again = admin_client.post('/api/payments/approve', json={'transactionId': body['transactionId'], 'action': 'approve'})
    assert again.status_code == 400


def test_coupon_limit_is_enforced_at_approval(app, student_client, admin_client):
    program_id = create_program(admin_client)
    create_coupon(admin_client, code='ONCE', discount_value=10, max_uses=1)

    add_user(app, 'second@test.local')
    second = app.test_client()
    login(second, 'second@test.local', 'studentpass1')

    transaction_ids = []
    for client, reference in ((student_client, 'TX-A'), (second, 'TX-B')):
        response = client.post('/api/payments/manual', json={
            'programId': program_id, 'paymentMethod': 'bank_transfer', 'reference': reference, 'couponCode': 'ONCE',
        })
        assert response.status_code == 201
        transaction_ids.append(response.get_json()['transactionId'])

    first = admin_client.post('/api/payments/approve', json={'transactionId': transaction_ids[0], 'approve': True})
    assert first.status_code == 200

    response = admin_client.post('/api/payments/approve', json={'transactionId': transaction_ids[1], 'approve': True})
    assert response.status_code == 409
    assert response.get_json()['message'] == 'Coupon usage limit reached'

    assert admin_client.get('/api/admin/coupons').get_json()['coupons'][0]['used_count'] == 1
    pending = admin_client.get('/api/payments', query_string={'status': 'pending'}).get_json()['payments']
    assert [p['id'] for p in pending] == [transaction_ids[1]]
    assert second.get('/api/programs').get_json()['programs'][0]['isEnrolled'] is False

    rejected = admin_client.post('/api/payments/approve', json={'transactionId': transaction_ids[1], 'action': 'reject'})
    assert rejected.status_code == 200


def test_rejected_payment_does_not_enroll(student_client, admin_client):
    program_id = create_program(admin_client)
    transaction_id = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-1',
    }).get_json()['transactionId']

    body = admin_client.post('/api/payments/approve', json={'transactionId': transaction_id, 'action': 'reject'}).get_json()
    assert body['status'] == 'rejected'
    assert student_client.get('/api/programs').get_json()['programs'][0]['isEnrolled'] is False


def test_manual_payments_can_be_disabled(student_client, admin_client):
    program_id = create_program(admin_client)
    set_settings(admin_client, {'payments.allowManualPayments': False})
    response = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-1',
    })
    assert response.status_code == 403


def test_auto_approve(student_client, admin_client):
    program_id = create_program(admin_client)
    set_settings(admin_client, {'payments.autoApprovePayments': True})
    body = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-1',
    }).get_json()
    assert body['status'] == 'approved'
    assert student_client.get('/api/programs').get_json()['programs'][0]['isEnrolled'] is True


def test_admin_listing_and_export(student_client, admin_client):
    program_id = create_program(admin_client)
    student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-1',
    })

    listing = admin_client.get('/api/payments', query_string={'status': 'pending'}).get_json()
    assert listing['pagination']['total'] == 1
    assert listing['payments'][0]['program_title'] == 'Certification Track'
    assert admin_client.get('/api/payments', query_string={'status': 'approved'}).get_json()['payments'] == []

    response = admin_client.get('/api/payments/export')
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
    assert rows[0][:3] == ['id', 'created_at', 'user_email']
    assert rows[1][2] == 'student@test.local'

    assert student_client.get('/api/payments/export').status_code == 403
