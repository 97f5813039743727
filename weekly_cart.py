"""
Weekly cart: a parent's persistent Mon-Fri basket, one line per
(menu item, delivery date, student, meal type, time slot).
"""

from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from flask import current_app

from models import db, Cart, CartItem, MenuItem, Student, WeeklyMenu, MEAL_TYPES, WEEKDAYS, money


class CartError(Exception):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def normalize_date(value):
    """Strip the time part. Accepts date, datetime or 'YYYY-MM-DD'."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip()[:10], '%Y-%m-%d').date()
        except ValueError:
            raise CartError(f'Invalid date: {value}')
    raise CartError('Date is required')


def week_start_for(value):
    """Monday of the week containing the given day"""
    day = normalize_date(value)
    return day - timedelta(days=day.weekday())


def day_name(value):
    return WEEKDAYS[normalize_date(value).weekday()]


def order_cutoff(delivery_date):
    """Orders for a day close at ORDER_CUTOFF_HOUR on the previous day"""
    hour = current_app.config.get('ORDER_CUTOFF_HOUR', 18)
    return datetime.combine(delivery_date - timedelta(days=1), time()) + timedelta(hours=hour)


def is_orderable_date(delivery_date, now=None):
    now = now or datetime.now()
    return delivery_date.weekday() < 5 and now < order_cutoff(delivery_date)


def check_orderable_date(delivery_date, now=None):
    if delivery_date.weekday() >= 5:
        raise CartError(f'The canteen is closed on {day_name(delivery_date)}s')
    if not is_orderable_date(delivery_date, now):
        raise CartError(f'Ordering for {delivery_date.isoformat()} is closed')


def published_menu_for(delivery_date):
    return WeeklyMenu.query.filter_by(
        week_start=week_start_for(delivery_date),
        publish_status='published'
    ).first()


def is_on_menu(menu_item_id, delivery_date, menu=None):
    menu = menu or published_menu_for(delivery_date)
    if not menu:
        return False
    return menu_item_id in menu.item_ids_for_day(day_name(delivery_date))


def get_or_create_cart(parent):
    """Get the parent's cart or create an empty one"""
    cart = Cart.query.filter_by(parent_id=parent.user_id).first()
    if not cart:
        cart = Cart(parent_id=parent.user_id)
        db.session.add(cart)
        db.session.commit()
    return cart


def _find_item(cart, item_id):
    for item in cart.items:
        if item.id == item_id:
            return item
    raise CartError('Cart item not found', 404)


def _parse_quantity(quantity):
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise CartError('Quantity must be a whole number')
    return quantity


def add_item(parent, menu_item_id, delivery_date, quantity=1, student_id=None,
             meal_type=None, time_slot=None, now=None):
    delivery_date = normalize_date(delivery_date)
    quantity = _parse_quantity(quantity)
    if quantity <= 0:
        raise CartError('Quantity must be at least 1')

    menu_item = db.session.get(MenuItem, menu_item_id)
    if not menu_item:
        raise CartError('Menu item not found', 404)
    if not menu_item.is_available:
        raise CartError(f'"{menu_item.name}" is not available')

    student = db.session.get(Student, student_id) if student_id is not None else None
    if not student or student.parent_user_id != parent.user_id:
        raise CartError('Select one of your linked students', 403)
    if not student.is_active:
        raise CartError(f'{student.full_name} is not active')

    meal_type = meal_type or menu_item.meal_type
    if meal_type not in MEAL_TYPES:
        raise CartError(f'Unknown meal type: {meal_type}')

    check_orderable_date(delivery_date, now)
    if not is_on_menu(menu_item.id, delivery_date):
        raise CartError(f'"{menu_item.name}" is not on the menu for {delivery_date.isoformat()}')

    cart = get_or_create_cart(parent)
    existing_item = next((
        item for item in cart.items
        if item.delivery_date == delivery_date
        and item.same_line(menu_item.id, student.id, meal_type, time_slot)
    ), None)

    if existing_item:
        existing_item.quantity += quantity
        cart_item = existing_item
    else:
        cart_item = CartItem(
            menu_item_id=menu_item.id,
            name=menu_item.name,
            price=menu_item.price,
            quantity=quantity,
            category=menu_item.category,
            delivery_date=delivery_date,
            student_id=student.id,
            student_name=student.full_name,
            meal_type=meal_type,
            time_slot=time_slot,
        )
        cart.items.append(cart_item)

    db.session.commit()
    return cart_item


def update_quantity(parent, item_id, quantity):
    """Set a line's quantity; zero or less removes the line"""
    quantity = _parse_quantity(quantity)
    cart = get_or_create_cart(parent)
    cart_item = _find_item(cart, item_id)
    if quantity <= 0:
        cart.items.remove(cart_item)
    else:
        cart_item.quantity = quantity
    db.session.commit()
    return cart


def remove_item(parent, item_id):
    cart = get_or_create_cart(parent)
    cart.items.remove(_find_item(cart, item_id))
    db.session.commit()
    return cart


def clear_day(parent, delivery_date):
    delivery_date = normalize_date(delivery_date)
    cart = get_or_create_cart(parent)
    for item in [i for i in cart.items if i.delivery_date == delivery_date]:
        cart.items.remove(item)
    db.session.commit()
    return cart


def clear_week(parent):
    cart = get_or_create_cart(parent)
    cart.items.clear()
    db.session.commit()
    return cart


def copy_day(parent, source_date, target_dates, now=None):
    """Copy every line of one day onto other days, merging into matching lines.

    Lines whose menu item is not on a target day's published menu are skipped
    and reported back.
    """
    source_date = normalize_date(source_date)
    cart = get_or_create_cart(parent)
    source_items = [i for i in cart.items if i.delivery_date == source_date]
    result = {'copied': 0, 'skipped': []}
    if not source_items:
        return result

    targets = []
    for target in target_dates:
        target = normalize_date(target)
        if target != source_date and target not in targets:
            check_orderable_date(target, now)
            targets.append(target)

    for target in targets:
        menu = published_menu_for(target)
        for source in source_items:
            if not is_on_menu(source.menu_item_id, target, menu):
                result['skipped'].append({'date': target.isoformat(), 'menu_item_id': source.menu_item_id,
                                          'name': source.name})
                continue
            existing_item = next((
                item for item in cart.items
                if item.delivery_date == target
                and item.same_line(source.menu_item_id, source.student_id, source.meal_type, source.time_slot)
            ), None)
            if existing_item:
                existing_item.quantity += source.quantity
            else:
                cart.items.append(CartItem(
                    menu_item_id=source.menu_item_id,
                    name=source.name,
                    price=source.price,
                    quantity=source.quantity,
                    category=source.category,
                    delivery_date=target,
                    student_id=source.student_id,
                    student_name=source.student_name,
                    meal_type=source.meal_type,
                    time_slot=source.time_slot,
                ))
            result['copied'] += 1

    db.session.commit()
    current_app.logger.info('Cart %s: copied %s line(s) from %s to %s day(s)',
                            cart.id, result['copied'], source_date, len(targets))
    return result


def group_items(items):
    """Group cart lines by delivery date, then by student"""
    grouped = OrderedDict()
    for item in sorted(items, key=lambda i: (i.delivery_date, i.student_id or 0, i.id or 0)):
        grouped.setdefault(item.delivery_date, OrderedDict()).setdefault(item.student_id, []).append(item)
    return grouped


def summary(cart):
    items = list(cart.items)
    total_cost = sum((item.subtotal for item in items), Decimal('0.00'))
    total_items = sum(item.quantity for item in items)

    category_breakdown = {}
    daily_costs = {}
    for item in items:
        category_breakdown[item.category] = category_breakdown.get(item.category, 0) + item.quantity
        daily_costs[item.delivery_date] = daily_costs.get(item.delivery_date, Decimal('0.00')) + item.subtotal

    days_with_orders = sorted(daily_costs)
    average = total_cost / len(days_with_orders) if days_with_orders else Decimal('0.00')

    by_date = {}
    for delivery_date, students in group_items(items).items():
        by_date[delivery_date.isoformat()] = [{
            'student_id': student_id,
            'student_name': lines[0].student_name,
            'items': [line.to_dict() for line in lines],
            'total': float(sum((line.subtotal for line in lines), Decimal('0.00'))),
        } for student_id, lines in students.items()]

    return {
        'total_cost': float(total_cost),
        'total_items': total_items,
        'category_breakdown': category_breakdown,
        'daily_costs': {d.isoformat(): float(cost) for d, cost in sorted(daily_costs.items())},
        'days_with_orders': [d.isoformat() for d in days_with_orders],
        'average_cost_per_day': float(money(average)),
        'by_date': by_date,
    }


def cart_to_dict(cart):
    return {
        'id': cart.id,
        'parent_id': cart.parent_id,
        'items': [item.to_dict() for item in cart.items],
        'summary': summary(cart),
    }
