import csv
import io
import logging

from flask import Blueprint, Response, jsonify, request, session

from .db import format_ts, get_db_connection, new_id, parse_ts, utcnow
from .decorators import login_required, role_required
from .errors import ApiError
from .exams import enroll_student, load_enrollable_program
from .settings import get_payment_settings
from .utils import as_bool, pagination_meta, parse_pagination, require_json

logger = logging.getLogger(__name__)

bp = Blueprint('payments', __name__)

DISCOUNT_TYPES = ('percentage', 'fixed')
PAYMENT_STATUSES = ('pending', 'approved', 'rejected')
PROCESSED_STATUSES = ('approved', 'completed', 'cancelled', 'rejected')

EXPORT_COLUMNS = [
    'id', 'created_at', 'user_email', 'user_name', 'program_title', 'amount', 'discount_amount',
    'final_amount', 'currency', 'coupon_code', 'payment_method', 'reference', 'payment_status',
    'approved_at', 'admin_notes',
]


def coupon_discount(coupon, amount, now=None):
    """Discount a coupon gives on amount, raising ApiError when it cannot be used"""
    if coupon is None or not coupon['is_active']:
        raise ApiError('Invalid or inactive coupon code', valid=False)

    now = now or utcnow()
    valid_until = parse_ts(coupon['valid_until'])
    if valid_until and valid_until < now:
        raise ApiError('Coupon has expired', valid=False)
    if coupon['max_uses'] and (coupon['used_count'] or 0) >= coupon['max_uses']:
        raise ApiError('Coupon usage limit reached', valid=False)
    if coupon['min_amount'] and amount < coupon['min_amount']:
        raise ApiError(f"Minimum amount of {coupon['min_amount']} required to use this coupon", valid=False)

    if coupon['discount_type'] == 'percentage':
        discount = amount * coupon['discount_value'] / 100
        if coupon['max_discount']:
            discount = min(discount, coupon['max_discount'])
    else:
        discount = coupon['discount_value']
    return round(min(max(discount, 0.0), amount), 2)


def find_coupon(conn, code):
    return conn.execute('SELECT * FROM coupons WHERE code = ?', ((code or '').strip().upper(),)).fetchone()


@bp.route('/api/coupons/validate', methods=['POST'])
@login_required
def validate_coupon():
    data = require_json()
    code = data.get('code')
    try:
        amount = float(data.get('amount') or 0)
    except (TypeError, ValueError):
        raise ApiError('Amount must be a number')
    if not code or amount <= 0:
        raise ApiError('Coupon code and amount are required')

    coupon = find_coupon(get_db_connection(), code)
    discount = coupon_discount(coupon, amount)
    return jsonify({
        'success': True,
        'valid': True,
        'code': coupon['code'],
        'discountType': coupon['discount_type'],
        'discountValue': coupon['discount_value'],
        'discountAmount': discount,
        'finalAmount': round(amount - discount, 2),
    })


@bp.route('/api/admin/coupons', methods=['POST'])
@role_required('admin')
def create_coupon():
    data = require_json()
    code = (data.get('code') or '').strip().upper()
    discount_type = data.get('discount_type', data.get('discountType')) or 'percentage'
    if not code:
        raise ApiError('Coupon code is required')
    if discount_type not in DISCOUNT_TYPES:
        raise ApiError(f'Discount type must be one of: {", ".join(DISCOUNT_TYPES)}')

    def number(key, camel, convert=float):
        raw = data.get(key, data.get(camel))
        if raw in (None, ''):
            return None
        try:
            return convert(raw)
        except (TypeError, ValueError):
            raise ApiError(f'{key} must be a number')

    value = number('discount_value', 'discountValue')
    if value is None or value <= 0:
        raise ApiError('Discount value must be positive')
    if discount_type == 'percentage' and value > 100:
        raise ApiError('Percentage discount cannot exceed 100')

    valid_until = data.get('valid_until', data.get('validUntil'))
    try:
        valid_until = format_ts(parse_ts(valid_until)) if valid_until else None
    except ValueError:
        raise ApiError('valid_until must be an ISO 8601 timestamp')

    conn = get_db_connection()
    if find_coupon(conn, code) is not None:
        raise ApiError('A coupon with this code already exists', 409)

    coupon_id = new_id()
    with conn:
        conn.execute('''
            INSERT INTO coupons (id, code, discount_type, discount_value, max_discount, min_amount, max_uses, valid_until, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (coupon_id, code, discount_type, value,
              number('max_discount', 'maxDiscount'), number('min_amount', 'minAmount'),
              number('max_uses', 'maxUses', int), valid_until,
              1 if as_bool(data.get('is_active', data.get('isActive')), True) else 0))
    return jsonify({'success': True, 'couponId': coupon_id, 'code': code}), 201


@bp.route('/api/admin/coupons')
@role_required('admin')
def list_coupons():
    rows = get_db_connection().execute('SELECT * FROM coupons ORDER BY code').fetchall()
    coupons = []
    for row in rows:
        coupon = dict(row)
        coupon['is_active'] = bool(coupon['is_active'])
        coupons.append(coupon)
    return jsonify({'success': True, 'coupons': coupons})


def approve_transaction(conn, transaction, admin_id, notes=None):
    """Mark approved, activate the enrollment and consume the coupon.

    Raises ApiError (409) when the coupon ran out of uses after the payment
    was submitted; callers run this inside ``with conn:`` so nothing sticks.
    """
    if transaction['coupon_code']:
        consumed = conn.execute('''
            UPDATE coupons SET used_count = COALESCE(used_count, 0) + 1
            WHERE code = ? AND (max_uses IS NULL OR max_uses = 0 OR COALESCE(used_count, 0) < max_uses)
        ''', (transaction['coupon_code'],))
        if consumed.rowcount == 0:
            raise ApiError('Coupon usage limit reached', 409, couponCode=transaction['coupon_code'])
    conn.execute('''
        UPDATE transactions SET payment_status = 'approved', approved_by = ?, approved_at = ?, admin_notes = ?
        WHERE id = ?
    ''', (admin_id, format_ts(utcnow()), notes, transaction['id']))
    if transaction['program_id']:
        enroll_student(conn, transaction['program_id'], transaction['user_id'],
                       payment_status='paid', transaction_id=transaction['id'])


@bp.route('/api/payments/manual', methods=['POST'])
@role_required('student')
def submit_manual_payment():
    payment_settings = get_payment_settings()
    if not payment_settings['allowManualPayments']:
        raise ApiError('Manual payments are currently disabled', 403)

    data = require_json()
    program_id = data.get('programId')
    payment_method = (data.get('paymentMethod') or '').strip()
    reference = (data.get('reference') or '').strip()
    if not program_id or not payment_method or not reference:
        raise ApiError('programId, paymentMethod and reference are required')

    user_id = session['user_id']
    conn = get_db_connection()
    program = load_enrollable_program(conn, program_id, user_id)
    pending = conn.execute('''
        SELECT 1 FROM transactions WHERE user_id = ? AND program_id = ? AND payment_status = 'pending'
    ''', (user_id, program_id)).fetchone()
    if pending is not None:
        raise ApiError('A payment for this program is already awaiting approval', 409)

    amount = float(program['enrollment_fee'] or 0)
    if amount <= 0:
        raise ApiError('This program is free; enroll directly')

    coupon_code = (data.get('couponCode') or '').strip().upper() or None
    discount = 0.0
    if coupon_code:
        discount = coupon_discount(find_coupon(conn, coupon_code), amount)

    transaction_id = new_id()
    with conn:
        conn.execute('''
            INSERT INTO transactions
                (id, user_id, program_id, amount, discount_amount, final_amount, currency, coupon_code,
                 payment_method, reference, payment_status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
        ''', (transaction_id, user_id, program_id, amount, discount, round(amount - discount, 2),
              payment_settings['currency'], coupon_code, payment_method, reference, format_ts(utcnow())))

        if payment_settings['autoApprovePayments']:
            transaction = conn.execute('SELECT * FROM transactions WHERE id = ?', (transaction_id,)).fetchone()
            approve_transaction(conn, transaction, None, 'Auto-approved')

    status = 'approved' if payment_settings['autoApprovePayments'] else 'pending'
    logger.info("Manual payment %s for program %s (%s)", transaction_id, program_id, status)
    return jsonify({
        'success': True,
        'transactionId': transaction_id,
        'status': status,
        'finalAmount': round(amount - discount, 2),
        'message': 'Payment approved' if status == 'approved' else 'Payment submitted for approval',
    }), 201


@bp.route('/api/payments')
@login_required
def list_payments():
    page, limit, offset = parse_pagination(request.args)
    conn = get_db_connection()

    where, params = [], []
    if session.get('user_type') == 'admin':
        status = request.args.get('status')
        if status:
            where.append('t.payment_status = ?')
            params.append(status)
    else:
        where.append('t.user_id = ?')
        params.append(session['user_id'])
    clause = f"WHERE {' AND '.join(where)}" if where else ''

    total = conn.execute(f'SELECT COUNT(*) AS count FROM transactions t {clause}', params).fetchone()['count']
    rows = conn.execute(f'''
        SELECT t.*, u.email AS user_email, u.full_name AS user_name, p.title AS program_title
        FROM transactions t
        JOIN users u ON t.user_id = u.id
        LEFT JOIN programs p ON t.program_id = p.id
        {clause}
        ORDER BY t.created_at DESC
        LIMIT ? OFFSET ?
    ''', (*params, limit, offset)).fetchall()

    return jsonify({
        'success': True,
        'payments': [dict(row) for row in rows],
        'pagination': pagination_meta(page, limit, total),
    })


@bp.route('/api/payments/approve', methods=['POST'])
@role_required('admin')
def review_payment():
    data = require_json()
    transaction_id = data.get('transactionId')
    if not transaction_id:
        raise ApiError('Transaction ID is required')
    if 'approve' in data:
        approve = as_bool(data['approve'])
    elif data.get('action') in ('approve', 'reject'):
        approve = data['action'] == 'approve'
    else:
        raise ApiError("Provide approve (true/false) or action ('approve'/'reject')")
    notes = data.get('notes') or data.get('adminNotes')

    conn = get_db_connection()
    transaction = conn.execute('SELECT * FROM transactions WHERE id = ?', (transaction_id,)).fetchone()
    if transaction is None:
        raise ApiError('Transaction not found', 404)
    if transaction['payment_status'] in PROCESSED_STATUSES:
        raise ApiError(f"Transaction already {transaction['payment_status']}", 400)

    with conn:
        if approve:
            approve_transaction(conn, transaction, session['user_id'], notes)
        else:
            conn.execute('''
                UPDATE transactions SET payment_status = 'rejected', approved_by = ?, approved_at = ?, admin_notes = ?
                WHERE id = ?
            ''', (session['user_id'], format_ts(utcnow()), notes, transaction_id))

    status = 'approved' if approve else 'rejected'
    logger.info("Payment %s %s by %s", transaction_id, status, session['user_id'])
    return jsonify({'success': True, 'status': status, 'message': f'Payment {status}'})


@bp.route('/api/payments/export')
@role_required('admin')
def export_payments():
    conn = get_db_connection()
    params = []
    clause = ''
    status = request.args.get('status')
    if status:
        clause = 'WHERE t.payment_status = ?'
        params.append(status)
    rows = conn.execute(f'''
        SELECT t.*, u.email AS user_email, u.full_name AS user_name, p.title AS program_title
        FROM transactions t
        JOIN users u ON t.user_id = u.id
        LEFT JOIN programs p ON t.program_id = p.id
        {clause}
        ORDER BY t.created_at DESC
    ''', params).fetchall()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for row in rows:
        writer.writerow([row[column] for column in EXPORT_COLUMNS])

    filename = f"payments_{utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        output.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )
