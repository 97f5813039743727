from datetime import timedelta

import pytest

from conftest import make_parent, make_student, menu_item, order_week, publish_week
from models import db, Order
import reports
import wallet


@pytest.fixture
def orders(ctx):
    """Three orders in the order week: completed Monday, cancelled Monday, pending Tuesday"""
    parent = make_parent(balance='1000.00')
    student = make_student(parent)
    week = order_week()
    publish_week(week)
    parent_id, student_id = parent.user_id, student.id

    def place(day, *lines):
        result = wallet.place_order(parent_id, parent_id, student_id,
                                    [{'menu_item_id': menu_item(name).id, 'quantity': qty} for name, qty in lines],
                                    week + timedelta(days=day))
        return db.session.get(Order, result['order_id'])

    completed = place(0, ('Chicken Adobo Rice', 1), ('Fresh Milk', 1))
    completed.status = 'completed'
    cancelled = place(0, ('Turon', 3))
    cancelled.status = 'cancelled'
    place(1, ('Turon', 2), ('Banana Cue', 1))
    db.session.commit()
    return week


def test_order_statistics_only_count_completed_revenue(orders):
    stats = reports.order_statistics(orders, orders + timedelta(days=6))

    assert stats['total_orders'] == 3
    assert stats['completed_orders'] == 1
    assert stats['cancelled_orders'] == 1
    assert stats['pending_orders'] == 1
    assert stats['total_revenue'] == 115.0
    assert stats['average_order_value'] == 115.0


def test_revenue_by_day_is_zero_filled(orders):
    days = reports.revenue_by_day(orders, orders + timedelta(days=4))

    assert [d['date'] for d in days] == [(orders + timedelta(days=i)).isoformat() for i in range(5)]
    assert days[0] == {'date': orders.isoformat(), 'revenue': 115.0, 'orders': 1}
    assert days[1]['revenue'] == 0.0


def test_weekly_menu_analytics_skip_cancelled_orders(orders):
    analytics = reports.weekly_menu_analytics(orders)

    assert analytics['item_totals'] == {'Chicken Adobo Rice': 1, 'Fresh Milk': 1, 'Turon': 2, 'Banana Cue': 1}
    assert analytics['total_items_ordered'] == 5
    assert analytics['meal_type_totals'] == {'breakfast': 0, 'snack': 3, 'lunch': 1, 'drinks': 1}
    assert analytics['popular_items_by_day']['Tuesday'][0] == {'name': 'Turon', 'quantity': 2}


def test_month_statistics_handles_december(ctx):
    stats = reports.month_statistics(2026, 12)
    assert stats['start_date'] == '2026-12-01'
    assert stats['end_date'] == '2026-12-31'


def test_dashboard_payload(orders):
    payload = reports.dashboard_payload()
    assert payload['active_students'] == 1
    assert payload['total_parents'] == 1
    assert payload['total_wallet_balance'] == 1000.0 - 115.0 - 60.0 - 60.0


def test_report_endpoints(app, admin_client):
    with app.app_context():
        week = order_week()

    start, end = week.isoformat(), (week + timedelta(days=6)).isoformat()
    stats = admin_client.get(f'/admin/reports/orders?start_date={start}&end_date={end}').get_json()['stats']
    assert stats['total_orders'] == 0

    assert admin_client.get('/admin/reports/orders?period=today').status_code == 200
    assert admin_client.get(f'/admin/reports/orders?start_date={end}&end_date={start}').status_code == 400
    assert len(admin_client.get(f'/admin/reports/revenue?start_date={start}&end_date={end}')
               .get_json()['days']) == 7


def test_pdf_and_excel_exports(app, admin_client):
    with app.app_context():
        week = order_week()
    query = f'start_date={week.isoformat()}&end_date={(week + timedelta(days=6)).isoformat()}'

    pdf = admin_client.get(f'/admin/reports/export/pdf?{query}')
    assert pdf.mimetype == 'application/pdf'
    assert pdf.data.startswith(b'%PDF')

    excel = admin_client.get(f'/admin/reports/export/excel?{query}')
    assert excel.data[:2] == b'PK'


def test_reports_need_permission(parent_client):
    assert parent_client.get('/admin/reports/revenue').status_code == 403


def test_month_report_rejects_out_of_range_values(admin_client):
    assert admin_client.get('/admin/reports/orders?period=month&year=2026&month=12').status_code == 200
    response = admin_client.get('/admin/reports/orders?period=month&month=13')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Month must be between 1 and 12'
    assert admin_client.get('/admin/reports/orders?period=month&month=0').status_code == 400
    assert admin_client.get('/admin/reports/orders?period=month&year=99999&month=1').status_code == 400
