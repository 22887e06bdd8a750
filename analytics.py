"""Admin analytics: aggregation over orders that have already been fetched."""
from collections import Counter
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from pricing import round_money
from schemas import Order, utcnow

ZERO = Decimal("0")
VIP_THRESHOLD = Decimal("2000")
UNKNOWN_CATEGORY = "Unknown"


class ProductSales(BaseModel):
    product_id: str
    name: str
    quantity: int = 0
    revenue: Decimal = ZERO
    orders: int = 0


class CategoryRevenue(BaseModel):
    category: str
    revenue: Decimal = ZERO


class DailyRevenue(BaseModel):
    day: date
    revenue: Decimal = ZERO
    orders: int = 0


class CustomerSegments(BaseModel):
    new_customers: int = 0
    returning_customers: int = 0
    vip_customers: int = 0
    average_lifetime_value: Decimal = ZERO


class AnalyticsReport(BaseModel):
    period_days: int
    revenue: Decimal
    paid_revenue: Decimal
    previous_revenue: Decimal
    revenue_growth: Decimal
    orders: int
    customers: int
    customer_growth: Decimal
    average_order_value: Decimal
    average_order_growth: Decimal
    status_counts: Dict[str, int]
    top_products: List[ProductSales]
    revenue_by_category: List[CategoryRevenue]
    revenue_by_day: List[DailyRevenue]
    segments: CustomerSegments


def growth(current: Decimal, previous: Decimal) -> Decimal:
    if previous <= 0:
        return ZERO
    return round_money((Decimal(current) - previous) / previous * 100)


def revenue_of(orders: Iterable[Order]) -> Decimal:
    return round_money(sum((o.total for o in orders), ZERO))


def average_order_value(orders: List[Order]) -> Decimal:
    if not orders:
        return round_money(ZERO)
    return round_money(revenue_of(orders) / len(orders))


def top_products(orders: Iterable[Order], limit: int = 10) -> List[ProductSales]:
    sales: Dict[str, ProductSales] = {}
    for order in orders:
        for item in order.items:
            entry = sales.setdefault(item.product_id, ProductSales(product_id=item.product_id, name=item.name))
            entry.quantity += item.quantity
            entry.revenue = round_money(entry.revenue + item.unit_price * item.quantity)
            entry.orders += 1
    ranked = sorted(sales.values(), key=lambda s: (s.revenue, s.quantity), reverse=True)
    return ranked[:limit]


def revenue_by_category(orders: Iterable[Order]) -> List[CategoryRevenue]:
    totals: Dict[str, Decimal] = {}
    for order in orders:
        for item in order.items:
            category = item.category or UNKNOWN_CATEGORY
            totals[category] = totals.get(category, ZERO) + item.unit_price * item.quantity
    ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    return [CategoryRevenue(category=c, revenue=round_money(r)) for c, r in ranked]


def revenue_by_day(orders: Iterable[Order], start: date, days: int) -> List[DailyRevenue]:
    buckets = {start + timedelta(days=i): DailyRevenue(day=start + timedelta(days=i)) for i in range(days)}
    for order in orders:
        bucket = buckets.get(order.created_at.date())
        if bucket is None:
            continue
        bucket.revenue = round_money(bucket.revenue + order.total)
        bucket.orders += 1
    return [buckets[d] for d in sorted(buckets)]


def customer_segments(orders: Iterable[Order]) -> CustomerSegments:
    spent: Dict[str, Decimal] = {}
    counts: Counter = Counter()
    for order in orders:
        spent[order.email] = spent.get(order.email, ZERO) + order.total
        counts[order.email] += 1
    if not spent:
        return CustomerSegments()
    return CustomerSegments(
        new_customers=sum(1 for c in counts.values() if c == 1),
        returning_customers=sum(1 for c in counts.values() if c > 1),
        vip_customers=sum(1 for s in spent.values() if s > VIP_THRESHOLD),
        average_lifetime_value=round_money(sum(spent.values(), ZERO) / len(spent)),
    )


def summarize(orders: Iterable[Order], days: int = 30, now: Optional[datetime] = None) -> AnalyticsReport:
    now = now or utcnow()
    orders = list(orders)
    current_start = now - timedelta(days=days)
    previous_start = current_start - timedelta(days=days)

    live = [o for o in orders if o.status != "cancelled"]
    current = [o for o in live if current_start <= o.created_at <= now]
    previous = [o for o in live if previous_start <= o.created_at < current_start]

    revenue = revenue_of(current)
    previous_revenue = revenue_of(previous)
    customers = len({o.email for o in current})
    previous_customers = len({o.email for o in previous})
    aov = average_order_value(current)

    return AnalyticsReport(
        period_days=days,
        revenue=revenue,
        paid_revenue=revenue_of(o for o in current if o.payment_status == "paid"),
        previous_revenue=previous_revenue,
        revenue_growth=growth(revenue, previous_revenue),
        orders=len(current),
        customers=customers,
        customer_growth=growth(Decimal(customers), Decimal(previous_customers)),
        average_order_value=aov,
        average_order_growth=growth(aov, average_order_value(previous)),
        status_counts=dict(Counter(o.status for o in orders)),
        top_products=top_products(current),
        revenue_by_category=revenue_by_category(current),
        revenue_by_day=revenue_by_day(current, (now - timedelta(days=days - 1)).date(), days),
        segments=customer_segments(live),
    )
