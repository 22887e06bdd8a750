from datetime import datetime, timedelta, timezone
from decimal import Decimal

import analytics
from schemas import Order, OrderItem, ShippingDetails

NOW = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)


def order(total, days_ago=1, email="a@example.com", status="paid", items=None, payment_status="paid"):
    total = Decimal(str(total))
    return Order(
        id=f"o-{email}-{days_ago}-{total}",
        order_number="ORD-1",
        user_id=email,
        email=email,
        items=items or [OrderItem(product_id="tea", name="Tea", quantity=1, unit_price=total)],
        subtotal=total,
        total=total,
        shipping_details=ShippingDetails(name="A", phone="9876543210", address="Somewhere"),
        status=status,
        payment_status=payment_status,
        created_at=NOW - timedelta(days=days_ago),
    )


def test_revenue_and_growth():
    orders = [
        order(300, days_ago=1),
        order(200, days_ago=2, email="b@example.com"),
        order(250, days_ago=40),
        order(999, days_ago=3, status="cancelled"),
    ]
    report = analytics.summarize(orders, days=30, now=NOW)
    assert report.revenue == Decimal("500")
    assert report.previous_revenue == Decimal("250")
    assert report.revenue_growth == Decimal("100")
    assert report.orders == 2
    assert report.customers == 2
    assert report.customer_growth == Decimal("100")
    assert report.average_order_value == Decimal("250")
    assert report.average_order_growth == Decimal("0")
    assert report.status_counts == {"paid": 3, "cancelled": 1}


def test_growth_without_history_is_zero():
    report = analytics.summarize([order(100)], now=NOW)
    assert report.revenue_growth == Decimal("0")


def test_empty_report():
    report = analytics.summarize([], days=7, now=NOW)
    assert report.revenue == Decimal("0")
    assert report.orders == 0
    assert report.top_products == []
    assert len(report.revenue_by_day) == 7
    assert report.segments.average_lifetime_value == Decimal("0")


def test_top_products_ranked_by_revenue():
    items_a = [OrderItem(product_id="tea", name="Tea", quantity=3, unit_price=Decimal("100")),
               OrderItem(product_id="mug", name="Mug", quantity=1, unit_price=Decimal("450"))]
    items_b = [OrderItem(product_id="tea", name="Tea", quantity=2, unit_price=Decimal("100"))]
    report = analytics.summarize([order(750, items=items_a), order(200, days_ago=2, items=items_b)], now=NOW)
    top = report.top_products
    assert [p.product_id for p in top] == ["tea", "mug"]
    assert top[0].quantity == 5
    assert top[0].revenue == Decimal("500")
    assert top[0].orders == 2


def test_revenue_by_day_buckets():
    report = analytics.summarize([order(100, days_ago=0), order(50, days_ago=0), order(70, days_ago=2)],
                                 days=3, now=NOW)
    days = {d.day: d for d in report.revenue_by_day}
    assert days[NOW.date()].revenue == Decimal("150")
    assert days[NOW.date()].orders == 2
    assert days[(NOW - timedelta(days=2)).date()].revenue == Decimal("70")


def test_customer_segments():
    orders = [
        order(1500, days_ago=1, email="vip@example.com"),
        order(900, days_ago=5, email="vip@example.com"),
        order(100, days_ago=2, email="new@example.com"),
    ]
    segments = analytics.customer_segments(orders)
    assert segments.returning_customers == 1
    assert segments.new_customers == 1
    assert segments.vip_customers == 1
    assert segments.average_lifetime_value == Decimal("1250")


def test_paid_revenue_excludes_pending_payments():
    report = analytics.summarize([order(300), order(200, days_ago=2, payment_status="pending")], now=NOW)
    assert report.revenue == Decimal("500")
    assert report.paid_revenue == Decimal("300")


def test_revenue_by_category():
    items_a = [OrderItem(product_id="tea", name="Tea", quantity=2, unit_price=Decimal("100"), category="Tea"),
               OrderItem(product_id="print", name="Print", quantity=1, unit_price=Decimal("450"), category="Art")]
    items_b = [OrderItem(product_id="tea", name="Tea", quantity=3, unit_price=Decimal("100"), category="Tea"),
               OrderItem(product_id="misc", name="Misc", quantity=1, unit_price=Decimal("25"))]
    report = analytics.summarize([order(650, items=items_a), order(325, days_ago=2, items=items_b)], now=NOW)
    assert [(c.category, c.revenue) for c in report.revenue_by_category] == [
        ("Tea", Decimal("500")),
        ("Art", Decimal("450")),
        ("Unknown", Decimal("25")),
    ]
