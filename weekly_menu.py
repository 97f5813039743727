"""
Weekly menu planning: draft / publish / archive lifecycle with a version
snapshot taken on every publish.
"""

from datetime import timedelta

from flask import current_app

from models import (db, WeeklyMenu, WeeklyMenuVersion, MenuItem, CartItem,
                    MEAL_TYPES, MEAL_TYPE_MAX_ITEMS, WEEKDAYS, utc_now)
from weekly_cart import week_start_for, day_name, normalize_date, published_menu_for


class WeeklyMenuError(Exception):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def validate_menu_items_by_day(menu_items_by_day):
    """Check and normalize Day -> meal type -> [item ids].

    Returns (normalized, warnings). Raises WeeklyMenuError listing every problem.
    """
    if not isinstance(menu_items_by_day, dict):
        raise WeeklyMenuError('menu_items_by_day must be an object of days')

    errors = []
    warnings = []
    normalized = {}
    requested_ids = set()

    for day, meals in menu_items_by_day.items():
        if day not in WEEKDAYS:
            errors.append(f'Unknown day: {day}')
            continue
        if not isinstance(meals, dict):
            errors.append(f'{day}: expected an object of meal types')
            continue
        normalized[day] = {}
        for meal_type, item_ids in meals.items():
            if meal_type not in MEAL_TYPES:
                errors.append(f'{day}: unknown meal type {meal_type}')
                continue
            try:
                ids = list(dict.fromkeys(int(i) for i in (item_ids or [])))
            except (TypeError, ValueError):
                errors.append(f'{day} - {meal_type}: item ids must be numbers')
                continue
            cap = MEAL_TYPE_MAX_ITEMS[meal_type]
            if len(ids) > cap:
                errors.append(f'{day} - {meal_type}: exceeds maximum of {cap} items (has {len(ids)})')
            if not ids:
                warnings.append(f'{day} - {meal_type}: no items selected')
            normalized[day][meal_type] = ids
            requested_ids.update(ids)

    if requested_ids:
        items = {m.id: m for m in MenuItem.query.filter(MenuItem.id.in_(requested_ids)).all()}
        missing = sorted(requested_ids - set(items))
        if missing:
            errors.append(f"Unknown menu item ids: {', '.join(str(i) for i in missing)}")
        for item in items.values():
            if not item.is_available:
                warnings.append(f'"{item.name}" is currently unavailable')

    if errors:
        raise WeeklyMenuError('; '.join(errors))
    return normalized, warnings


def get_for_week(value):
    return WeeklyMenu.query.filter_by(week_start=week_start_for(value)).first()


def get_or_404(menu_id):
    menu = db.session.get(WeeklyMenu, menu_id)
    if not menu:
        raise WeeklyMenuError('Weekly menu not found', 404)
    return menu


def history(limit=10):
    return WeeklyMenu.query.order_by(WeeklyMenu.week_start.desc()).limit(limit).all()


def save(week_start, menu_items_by_day):
    """Create or replace a week's content. Editing always returns the menu to draft."""
    week_start = week_start_for(week_start)
    normalized, warnings = validate_menu_items_by_day(menu_items_by_day)

    menu = WeeklyMenu.query.filter_by(week_start=week_start).first()
    if not menu:
        menu = WeeklyMenu(week_start=week_start, current_version=0)
        db.session.add(menu)
    menu.menu_items_by_day = normalized
    menu.publish_status = 'draft'
    menu.published_at = None
    menu.archived_at = None
    db.session.commit()
    return menu, warnings


def publish(menu, user_id=None, menu_items_by_day=None):
    if menu_items_by_day is not None:
        menu.menu_items_by_day, _ = validate_menu_items_by_day(menu_items_by_day)
    if not menu.all_item_ids():
        raise WeeklyMenuError('Cannot publish an empty menu')

    menu.current_version = (menu.current_version or 0) + 1
    menu.publish_status = 'published'
    menu.published_at = utc_now()
    menu.archived_at = None
    db.session.add(WeeklyMenuVersion(
        weekly_menu_id=menu.id,
        version=menu.current_version,
        week_start=menu.week_start,
        menu_items_by_day=menu.menu_items_by_day,
        created_by=user_id,
    ))
    db.session.commit()
    current_app.logger.info('Weekly menu %s published as version %s', menu.week_start, menu.current_version)
    return menu


def unpublish(menu):
    if menu.publish_status != 'published':
        raise WeeklyMenuError('Menu is not published', 409)
    menu.publish_status = 'draft'
    menu.published_at = None
    db.session.commit()
    return menu


def archive(menu):
    menu.publish_status = 'archived'
    menu.archived_at = utc_now()
    db.session.commit()
    return menu


def versions(menu):
    return menu.versions.order_by(WeeklyMenuVersion.version.desc()).all()


def revert(menu, version):
    snapshot = menu.versions.filter_by(version=version).first()
    if not snapshot:
        raise WeeklyMenuError('Version not found', 404)
    menu.menu_items_by_day = dict(snapshot.menu_items_by_day)
    menu.publish_status = 'draft'
    menu.published_at = None
    db.session.commit()
    return menu


def copy_from_previous_week(target_week_start):
    target = week_start_for(target_week_start)
    previous = WeeklyMenu.query.filter_by(week_start=target - timedelta(days=7)).first()
    if not previous:
        raise WeeklyMenuError('No menu found for previous week', 404)

    menu = WeeklyMenu.query.filter_by(week_start=target).first()
    if not menu:
        menu = WeeklyMenu(week_start=target, current_version=0)
        db.session.add(menu)
    menu.menu_items_by_day = dict(previous.menu_items_by_day or {})
    menu.publish_status = 'draft'
    menu.published_at = None
    db.session.commit()
    return menu


def delete(menu):
    db.session.delete(menu)
    db.session.commit()


def remove_menu_item(menu_item_id):
    """Drop an item id from every weekly menu and cart. Caller commits."""
    for menu in WeeklyMenu.query.all():
        changed = False
        content = {}
        for day, meals in (menu.menu_items_by_day or {}).items():
            content[day] = {}
            for meal_type, ids in meals.items():
                kept = [i for i in ids if i != menu_item_id]
                changed = changed or len(kept) != len(ids)
                content[day][meal_type] = kept
        if changed:
            menu.menu_items_by_day = content
    CartItem.query.filter_by(menu_item_id=menu_item_id).delete(synchronize_session=False)


def resolved_menu(value):
    """Published menu for the week of a date with available items expanded per day and meal type"""
    menu = published_menu_for(value)
    if not menu:
        return None

    items = {m.id: m for m in MenuItem.query.filter(
        MenuItem.id.in_(menu.all_item_ids()), MenuItem.is_available.is_(True)).all()}
    days = {}
    for day in WEEKDAYS:
        meals = (menu.menu_items_by_day or {}).get(day)
        if not meals:
            continue
        days[day] = {
            meal_type: [items[i].to_dict() for i in ids if i in items]
            for meal_type, ids in meals.items()
        }

    data = menu.to_dict()
    data['days'] = days
    return data


def check_availability(value, menu_item_ids):
    """Split requested ids into those on the published menu for that day and those not"""
    value = normalize_date(value)
    menu = published_menu_for(value)
    on_menu = set(menu.item_ids_for_day(day_name(value))) if menu else set()
    return {
        'date': value.isoformat(),
        'available': [i for i in menu_item_ids if i in on_menu],
        'unavailable': [i for i in menu_item_ids if i not in on_menu],
    }
