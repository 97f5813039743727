"""
Order statistics, menu analytics and report exports (PDF / Excel).

All order figures are keyed on delivery date, the day the food is served.
"""

from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from io import BytesIO

from flask import current_app
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Table as PDFTable, TableStyle, Paragraph, Spacer

from models import db, Order, OrderItem, Parent, Student, Topup, User, WEEKDAYS, MEAL_TYPES, money, utc_now

HEADER_FILL = PatternFill(start_color="CCCCCC", end_color="CCCCCC", fill_type="solid")


def _orders_between(start_date, end_date):
    return Order.query.filter(
        Order.delivery_date >= start_date,
        Order.delivery_date <= end_date
    ).order_by(Order.delivery_date, Order.created_at).all()


def order_statistics(start_date, end_date):
    orders = _orders_between(start_date, end_date)
    completed = [o for o in orders if o.status == 'completed']
    revenue = sum((money(o.total_amount) for o in completed), Decimal('0.00'))
    average = money(revenue / len(completed)) if completed else Decimal('0.00')

    return {
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'total_orders': len(orders),
        'completed_orders': len(completed),
        'cancelled_orders': sum(1 for o in orders if o.status == 'cancelled'),
        'pending_orders': sum(1 for o in orders if o.status == 'pending'),
        'total_revenue': float(revenue),
        'average_order_value': float(average),
    }


def today_statistics(today=None):
    today = today or date.today()
    return order_statistics(today, today)


def week_statistics(start_date=None):
    start_date = start_date or date.today()
    return order_statistics(start_date, start_date + timedelta(days=6))


def month_statistics(year=None, month=None):
    today = date.today()
    year = year or today.year
    month = month or today.month
    start_date = date(year, month, 1)
    next_month = date(year + month // 12, month % 12 + 1, 1)
    return order_statistics(start_date, next_month - timedelta(days=1))


def revenue_by_day(start_date, end_date):
    """Completed revenue and order count for every day in the range, zero-filled"""
    days = OrderedDict()
    current_day = start_date
    while current_day <= end_date:
        days[current_day] = {'revenue': Decimal('0.00'), 'orders': 0}
        current_day += timedelta(days=1)

    for order in _orders_between(start_date, end_date):
        if order.status != 'completed':
            continue
        days[order.delivery_date]['revenue'] += money(order.total_amount)
        days[order.delivery_date]['orders'] += 1

    return [{
        'date': d.isoformat(),
        'revenue': float(v['revenue']),
        'orders': v['orders'],
    } for d, v in days.items()]


def weekly_menu_analytics(week_start):
    week_end = week_start + timedelta(days=6)
    rows = db.session.query(OrderItem, Order.delivery_date).join(Order).filter(
        Order.delivery_date >= week_start,
        Order.delivery_date <= week_end,
        Order.status != 'cancelled'
    ).all()

    item_totals = {}
    day_items = {}
    meal_type_totals = {meal_type: 0 for meal_type in MEAL_TYPES}
    total_items = 0

    for item, delivery_date in rows:
        key = item.name
        day = WEEKDAYS[delivery_date.weekday()]
        item_totals[key] = item_totals.get(key, 0) + item.quantity
        day_counts = day_items.setdefault(day, {})
        day_counts[key] = day_counts.get(key, 0) + item.quantity
        if item.meal_type:
            meal_type_totals[item.meal_type] = meal_type_totals.get(item.meal_type, 0) + item.quantity
        total_items += item.quantity

    popular_by_day = {
        day: [{'name': name, 'quantity': qty}
              for name, qty in sorted(counts.items(), key=lambda x: (-x[1], x[0]))]
        for day, counts in day_items.items()
    }

    return {
        'week_start': week_start.isoformat(),
        'item_totals': item_totals,
        'items_by_day': day_items,
        'popular_items_by_day': popular_by_day,
        'meal_type_totals': meal_type_totals,
        'total_items_ordered': total_items,
    }


def topup_statistics(start_date=None, end_date=None):
    query = Topup.query
    if start_date:
        query = query.filter(Topup.request_date >= datetime.combine(start_date, time.min))
    if end_date:
        query = query.filter(Topup.request_date < datetime.combine(end_date + timedelta(days=1), time.min))
    topups = query.all()

    by_status = {}
    for topup in topups:
        entry = by_status.setdefault(topup.status, {'count': 0, 'amount': Decimal('0.00')})
        entry['count'] += 1
        entry['amount'] += money(topup.amount)

    pending = Topup.query.filter_by(status='pending').all()
    today = utc_now().date()
    return {
        'pending_count': len(pending),
        'pending_today': sum(1 for t in pending if t.request_date and t.request_date.date() == today),
        'pending_amount': float(sum((money(t.amount) for t in pending), Decimal('0.00'))),
        'by_status': {k: {'count': v['count'], 'amount': float(v['amount'])} for k, v in by_status.items()},
    }


def dashboard_payload():
    topups = topup_statistics()
    total_balance = db.session.query(db.func.coalesce(db.func.sum(Parent.balance), 0)).scalar()
    return {
        'today': today_statistics(),
        'pending_topups': topups['pending_count'],
        'pending_topup_amount': topups['pending_amount'],
        'active_students': Student.query.filter_by(is_active=True).count(),
        'total_parents': Parent.query.join(User).filter(User.is_active.is_(True)).count(),
        'total_wallet_balance': float(money(total_balance)),
    }


def _currency(amount):
    symbol = current_app.config.get('CURRENCY_SYMBOL', '₱')
    return f'{symbol}{money(amount):,.2f}'


def export_orders_pdf(start_date, end_date):
    orders = _orders_between(start_date, end_date)

    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(A4))
    elements = []
    styles = getSampleStyleSheet()

    elements.append(Paragraph(f"{current_app.config.get('APP_NAME', 'School Canteen')} - Orders", styles['Heading1']))
    elements.append(Paragraph(f"Period: {start_date.isoformat()} - {end_date.isoformat()}", styles['Normal']))
    elements.append(Spacer(1, 20))

    data = [['No', 'Delivery', 'Order No.', 'Student', 'Items', 'Status', 'Total']]
    for i, order in enumerate(orders, 1):
        data.append([
            str(i),
            order.delivery_date.isoformat(),
            order.order_number,
            order.student.full_name if order.student else '-',
            str(sum(item.quantity for item in order.items)),
            order.status,
            _currency(order.total_amount),
        ])

    completed_total = sum((money(o.total_amount) for o in orders if o.status == 'completed'), Decimal('0.00'))
    data.append(['', '', '', '', '', 'COMPLETED', _currency(completed_total)])

    table = PDFTable(data)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 10),
        ('BACKGROUND', (0, -1), (-1, -1), colors.lightgrey),
        ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
        ('GRID', (0, 0), (-1, -1), 1, colors.black)
    ]))
    elements.append(table)

    doc.build(elements)
    buffer.seek(0)
    return buffer


def _write_sheet(ws, title, subtitle, headers, rows):
    ws['A1'] = title
    ws['A1'].font = Font(bold=True, size=16)
    ws['A2'] = subtitle

    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=4, column=col, value=header)
        cell.font = Font(bold=True)
        cell.fill = HEADER_FILL

    for row_index, values in enumerate(rows, 5):
        for col, value in enumerate(values, 1):
            ws.cell(row=row_index, column=col, value=value)
    return len(rows) + 5


def export_orders_excel(start_date, end_date):
    orders = _orders_between(start_date, end_date)
    wb = Workbook()
    ws = wb.active
    ws.title = "Orders"

    headers = ['No', 'Delivery Date', 'Order No.', 'Parent', 'Student', 'Type', 'Status', 'Items', 'Total']
    rows = []
    for i, order in enumerate(orders, 1):
        rows.append([
            i,
            order.delivery_date.isoformat(),
            order.order_number,
            order.parent.user.full_name if order.parent and order.parent.user else '-',
            order.student.full_name if order.student else '-',
            order.order_type,
            order.status,
            ', '.join(f'{item.name} x{item.quantity}' for item in order.items),
            float(money(order.total_amount)),
        ])
    total_row = _write_sheet(ws, 'Orders', f'Period: {start_date.isoformat()} - {end_date.isoformat()}',
                             headers, rows)

    completed_total = sum((money(o.total_amount) for o in orders if o.status == 'completed'), Decimal('0.00'))
    ws.cell(row=total_row, column=8, value='COMPLETED').font = Font(bold=True)
    ws.cell(row=total_row, column=9, value=float(completed_total)).font = Font(bold=True)

    buffer = BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return buffer


def export_transactions_excel(parent, transactions):
    wb = Workbook()
    ws = wb.active
    ws.title = "Transactions"

    headers = ['Date', 'Type', 'Reason', 'Description', 'Amount', 'Balance Before', 'Balance After']
    rows = [[
        t.created_at.strftime('%Y-%m-%d %H:%M') if t.created_at else '',
        t.type,
        t.reason,
        t.description or '',
        float(money(t.amount)),
        float(money(t.balance_before)),
        float(money(t.balance_after)),
    ] for t in transactions]
    _write_sheet(ws, 'Wallet Transactions', f'{parent.user.full_name} - balance {_currency(parent.balance)}',
                 headers, rows)

    buffer = BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return buffer
