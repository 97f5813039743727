"""
Parent wallet: order placement, refunds, top-up crediting and manual
adjustments.

Every balance change happens with the parent row locked (SELECT ... FOR
UPDATE) and writes exactly one ParentTransaction in the same database
transaction as the change it pays for.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from flask import current_app

from models import (db, Parent, Student, MenuItem, Order, OrderItem, ParentTransaction, Topup, Cart,
                    CANCELLABLE_STATUSES, MEAL_TYPES, money, utc_now)
from weekly_cart import group_items, normalize_date, is_orderable_date, CartError


class WalletError(Exception):
    """Wallet/order failure with a machine-readable code"""

    messages = {
        'not_allowed': 'You are not allowed to perform this action',
        'parent_not_found': 'Parent account not found',
        'invalid_total': 'Order total must be greater than zero',
        'insufficient_balance': 'Insufficient wallet balance',
        'student_not_linked': 'Student is not linked to this parent',
        'empty_cart': 'Your cart is empty',
        'item_unavailable': 'An item in your order is no longer available',
        'order_closed': 'Ordering for this date is closed',
        'invalid_status': 'This action is not possible in the current status',
        'already_processed': 'This request has already been processed',
        'invalid_amount': 'Amount must be greater than zero',
        'not_found': 'Record not found',
    }

    statuses = {
        'not_allowed': 403,
        'parent_not_found': 404,
        'not_found': 404,
        'insufficient_balance': 402,
        'invalid_status': 409,
        'already_processed': 409,
    }

    def __init__(self, code, message=None):
        self.code = code
        self.message = message or self.messages.get(code, code)
        self.status = self.statuses.get(code, 400)
        super().__init__(self.message)

    def to_dict(self):
        return {'success': False, 'error': self.message, 'code': self.code}


def generate_order_number():
    return f"ORD-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6].upper()}"


def lock_parent(parent_id):
    """Load the parent row FOR UPDATE, refreshing any cached copy"""
    parent = db.session.execute(
        db.select(Parent)
        .filter_by(user_id=parent_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if parent is None:
        raise WalletError('parent_not_found')
    return parent


def _lock_row(model, row_id):
    row = db.session.execute(
        db.select(model)
        .filter_by(id=row_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise WalletError('not_found')
    return row


def _apply(parent, amount, reason, reference_id=None, order_ids=None, description=None, created_by=None):
    """Move the balance by a signed amount and record the ledger line. Caller commits."""
    amount = money(amount)
    balance_before = money(parent.balance)
    balance_after = balance_before + amount
    if balance_after < 0:
        raise WalletError('insufficient_balance')

    parent.balance = balance_after
    parent.updated_at = utc_now()
    transaction = ParentTransaction(
        parent_id=parent.user_id,
        type='credit' if amount > 0 else 'debit',
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        reason=reason,
        description=description,
        reference_id=str(reference_id) if reference_id is not None else None,
        order_ids=order_ids or [],
        status='completed',
        created_by=created_by,
    )
    db.session.add(transaction)
    return transaction


def _check_student(parent, student_id):
    student = db.session.get(Student, student_id) if student_id is not None else None
    if not student or student.parent_user_id != parent.user_id:
        raise WalletError('student_not_linked')
    if not student.is_active:
        raise WalletError('student_not_linked', f'{student.full_name} is not active')
    return student


def _resolve_lines(lines):
    """Turn requested lines into (menu_item, quantity, meal_type) using current catalogue prices"""
    resolved = []
    for line in lines:
        menu_item_id = line.get('menu_item_id') or line.get('id')
        try:
            quantity = int(line.get('quantity', 1))
        except (TypeError, ValueError):
            raise WalletError('invalid_total', 'Quantity must be a whole number')
        if quantity <= 0:
            raise WalletError('invalid_total', 'Quantity must be at least 1')

        menu_item = db.session.execute(
            db.select(MenuItem)
            .filter_by(id=menu_item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not menu_item or not menu_item.is_available:
            name = menu_item.name if menu_item else f'#{menu_item_id}'
            raise WalletError('item_unavailable', f'"{name}" is not available')
        if not menu_item.has_stock(quantity):
            raise WalletError('item_unavailable',
                              f'Not enough stock for "{menu_item.name}" (left: {menu_item.stock_quantity})')

        meal_type = line.get('meal_type') or menu_item.meal_type
        if meal_type not in MEAL_TYPES:
            meal_type = menu_item.meal_type
        resolved.append((menu_item, quantity, meal_type))
    return resolved


def _build_order(parent, student, resolved, delivery_date, order_type,
                 delivery_time=None, special_instructions=None):
    order = Order(
        order_number=generate_order_number(),
        parent_id=parent.user_id,
        student_id=student.id,
        status='pending',
        order_type=order_type,
        delivery_date=delivery_date,
        delivery_time=delivery_time,
        special_instructions=special_instructions,
    )
    for menu_item, quantity, meal_type in resolved:
        price = money(menu_item.price)
        order.items.append(OrderItem(
            menu_item_id=menu_item.id,
            name=menu_item.name,
            price=price,
            quantity=quantity,
            subtotal=price * quantity,
            meal_type=meal_type,
        ))
        if menu_item.stock_quantity is not None:
            if menu_item.stock_quantity < quantity:
                raise WalletError('item_unavailable', f'Not enough stock for "{menu_item.name}"')
            menu_item.stock_quantity -= quantity
    order.calculate_total()
    db.session.add(order)
    return order


def place_order(parent_id, actor_id, student_id, items, delivery_date,
                delivery_time=None, special_instructions=None):
    """Create a one-time order and pay for it from the wallet, atomically.

    Returns {'order_id', 'order_number', 'balance_after'}.
    """
    try:
        if actor_id is None or actor_id != parent_id:
            raise WalletError('not_allowed')

        parent = lock_parent(parent_id)
        student = _check_student(parent, student_id)
        try:
            delivery_date = normalize_date(delivery_date)
        except CartError as e:
            raise WalletError('order_closed', e.message)
        if not is_orderable_date(delivery_date):
            raise WalletError('order_closed')

        resolved = _resolve_lines(items or [])
        total = sum((money(m.price) * q for m, q, _ in resolved), Decimal('0.00'))
        if total <= 0:
            raise WalletError('invalid_total')
        if money(parent.balance) < total:
            raise WalletError('insufficient_balance')

        order = _build_order(parent, student, resolved, delivery_date, 'one-time',
                             delivery_time, special_instructions)
        db.session.flush()

        _apply(parent, -total, 'single_order', reference_id=order.id, order_ids=[order.id],
               description=f'Order {order.order_number}', created_by=actor_id)
        db.session.commit()
    except WalletError as e:
        db.session.rollback()
        current_app.logger.warning('place_order rejected for parent %s: %s', parent_id, e.code)
        raise

    current_app.logger.info('Order %s placed by parent %s: total %s, balance now %s',
                            order.order_number, parent_id, total, parent.balance)
    return {
        'order_id': order.id,
        'order_number': order.order_number,
        'balance_after': float(money(parent.balance)),
    }


def place_weekly_order(parent_id, actor_id):
    """Check out the whole weekly cart: one order per (delivery date, student),
    paid with a single wallet debit, then empty the cart.
    """
    try:
        if actor_id is None or actor_id != parent_id:
            raise WalletError('not_allowed')

        parent = lock_parent(parent_id)
        cart = Cart.query.filter_by(parent_id=parent_id).first()
        if not cart or not cart.items:
            raise WalletError('empty_cart')

        planned = []
        for delivery_date, students in group_items(cart.items).items():
            if not is_orderable_date(delivery_date):
                raise WalletError('order_closed', f'Ordering for {delivery_date.isoformat()} is closed')
            for student_id, lines in students.items():
                student = _check_student(parent, student_id)
                resolved = _resolve_lines([
                    {'menu_item_id': line.menu_item_id, 'quantity': line.quantity, 'meal_type': line.meal_type}
                    for line in lines
                ])
                planned.append((delivery_date, student, resolved))

        total = sum((money(m.price) * q for _, _, resolved in planned for m, q, _ in resolved), Decimal('0.00'))
        if total <= 0:
            raise WalletError('invalid_total')
        if money(parent.balance) < total:
            raise WalletError('insufficient_balance')

        orders = [
            _build_order(parent, student, resolved, delivery_date, 'weekly')
            for delivery_date, student, resolved in planned
        ]
        db.session.flush()

        order_ids = [o.id for o in orders]
        _apply(parent, -total, 'weekly_order', reference_id=order_ids[0], order_ids=order_ids,
               description=f'Weekly order ({len(orders)} orders)', created_by=actor_id)
        cart.items.clear()
        db.session.commit()
    except WalletError as e:
        db.session.rollback()
        current_app.logger.warning('Weekly checkout rejected for parent %s: %s', parent_id, e.code)
        raise

    current_app.logger.info('Weekly checkout for parent %s: %s orders, total %s',
                            parent_id, len(orders), total)
    return {
        'order_ids': order_ids,
        'order_numbers': [o.order_number for o in orders],
        'total': float(total),
        'balance_after': float(money(parent.balance)),
    }


def cancel_order(order_id, actor):
    """Cancel an order, restore stock and refund its total to the wallet"""
    try:
        order = _lock_row(Order, order_id)
        if not actor.is_admin:
            if order.parent_id != actor.id:
                raise WalletError('not_allowed')
            if order.status != 'pending':
                raise WalletError('invalid_status', 'Only pending orders can be cancelled')
        if order.status not in CANCELLABLE_STATUSES:
            raise WalletError('invalid_status', f'Cannot cancel an order that is {order.status}')

        parent = lock_parent(order.parent_id)
        order.status = 'cancelled'
        order.cancelled_at = utc_now()
        for item in order.items:
            if item.menu_item and item.menu_item.stock_quantity is not None:
                item.menu_item.stock_quantity += item.quantity

        refund = money(order.total_amount)
        if refund > 0:
            _apply(parent, refund, 'refund', reference_id=order.id, order_ids=[order.id],
                   description=f'Refund for {order.order_number}', created_by=actor.id)
        db.session.commit()
    except WalletError as e:
        db.session.rollback()
        current_app.logger.warning('Cancel of order %s rejected: %s', order_id, e.code)
        raise

    current_app.logger.info('Order %s cancelled by user %s, refunded %s', order.order_number, actor.id, refund)
    return order


def approve_topup(topup_id, admin_id, admin_notes=None):
    """Credit a pending top-up to the parent's wallet exactly once"""
    try:
        topup = _lock_row(Topup, topup_id)
        if topup.status != 'pending':
            raise WalletError('already_processed')

        parent = lock_parent(topup.parent_id)
        _apply(parent, topup.amount, 'topup', reference_id=topup.id,
               description=f'Top-up via {topup.payment_method}', created_by=admin_id)
        # credited immediately, so the request goes straight to completed
        topup.status = 'completed'
        topup.processed_by = admin_id
        topup.processed_at = utc_now()
        if admin_notes:
            topup.admin_notes = admin_notes
        db.session.commit()
    except WalletError as e:
        db.session.rollback()
        current_app.logger.warning('Approval of top-up %s rejected: %s', topup_id, e.code)
        raise

    current_app.logger.info('Top-up %s approved by %s: +%s for parent %s',
                            topup.id, admin_id, topup.amount, topup.parent_id)
    return topup


def decline_topup(topup_id, admin_id, reason):
    try:
        topup = _lock_row(Topup, topup_id)
        if topup.status != 'pending':
            raise WalletError('already_processed')
        topup.status = 'declined'
        topup.processed_by = admin_id
        topup.processed_at = utc_now()
        topup.admin_notes = reason
        db.session.commit()
    except WalletError:
        db.session.rollback()
        raise

    current_app.logger.info('Top-up %s declined by %s', topup.id, admin_id)
    return topup


def adjust_balance(parent_id, amount, admin_id, description=None):
    """Manual signed correction by an admin"""
    amount = money(amount)
    try:
        if amount == 0:
            raise WalletError('invalid_amount', 'Adjustment cannot be zero')
        parent = lock_parent(parent_id)
        transaction = _apply(parent, amount, 'adjustment', description=description or 'Manual adjustment',
                             created_by=admin_id)
        db.session.commit()
    except WalletError:
        db.session.rollback()
        raise

    current_app.logger.info('Balance of parent %s adjusted by %s (%s)', parent_id, amount, admin_id)
    return transaction
