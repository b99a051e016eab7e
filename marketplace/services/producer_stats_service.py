from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marketplace.models import Order, OrderStatus, Product, Stock, StockAlert
from marketplace.services.money import ZERO, money
from marketplace.services.order_lifecycle import COMMITTED_STATUSES
from marketplace.services.order_lines import load_order_lines
from marketplace.services.order_scope import producer_order_condition
from marketplace.services.stock_service import should_alert
from marketplace.services.wallet_service import get_or_create_wallet, serialize_wallet


def producer_stats(db: Session, *, producer_id: int) -> dict:
    product_count = db.execute(select(func.count(Product.id)).where(Product.producer_id == producer_id)).scalar_one()

    stock_rows = db.execute(
        select(Stock, StockAlert)
        .join(Product, Product.id == Stock.product_id)
        .outerjoin(StockAlert, StockAlert.product_id == Stock.product_id)
        .where(Product.producer_id == producer_id)
    ).all()
    low_stock = sum(1 for stock, alert in stock_rows if should_alert(stock.quantity, stock.peak_quantity, alert))

    in_scope = producer_order_condition(producer_id)
    by_status = dict(
        db.execute(
            select(Order.status, func.count(Order.id))
            .where(in_scope, Order.status != OrderStatus.DRAFT)
            .group_by(Order.status)
        ).all()
    )

    revenue_order_ids = db.execute(
        select(Order.id).where(in_scope, Order.status.in_(COMMITTED_STATUSES))
    ).scalars().all()
    revenue = ZERO
    for lines in load_order_lines(db, revenue_order_ids).values():
        revenue += sum((line.amount for line in lines if line.active and line.producer_id == producer_id), ZERO)

    return {
        'products': product_count,
        'lowStockProducts': low_stock,
        'ordersByStatus': {status.value: count for status, count in by_status.items()},
        'totalOrders': sum(by_status.values()),
        'grossRevenue': money(revenue),
        'wallet': serialize_wallet(get_or_create_wallet(db, producer_id)),
    }
