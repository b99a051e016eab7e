from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from marketplace.errors import Forbidden, InvalidState, NotFound
from marketplace.models import (
    Invoice,
    Notification,
    NotificationType,
    OrderStatus,
    Stock,
    UserRole,
    Wallet,
    WalletTransaction,
    WalletTransactionStatus,
)
from marketplace.services.order_service import allowed_transitions, change_order_status
from tests.factories import DatabaseTestCase, make_order, make_producer, make_product, make_user, principal_for


class OrderStatusTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client_user = make_user(self.db)
        self.admin = make_user(self.db, role=UserRole.ADMIN, name='Admin')
        self.producer_user, self.producer = make_producer(self.db)
        self.product = make_product(self.db, self.producer, price='25.00', stock='10')
        self.order = make_order(self.db, self.client_user, [(self.product, '1')], status=OrderStatus.PENDING)
        self.producer_principal = principal_for(self.db, self.producer_user)

    def _wallet(self) -> Wallet:
        wallet = self.db.execute(select(Wallet).where(Wallet.producer_id == self.producer.id)).scalar_one()
        self.db.refresh(wallet)
        return wallet

    def _move(self, status: OrderStatus, principal=None):
        return change_order_status(
            self.db, principal=principal or self.producer_principal, order_id=self.order.id, new_status=status
        )

    def test_producer_walks_order_to_delivery_and_wallet_is_released(self) -> None:
        self._move(OrderStatus.CONFIRMED)
        wallet = self._wallet()
        self.assertEqual(wallet.pending_balance, Decimal('23.75'))
        self.assertEqual(wallet.total_earned, Decimal('23.75'))
        self.assertEqual(wallet.balance, Decimal('0'))

        self._move(OrderStatus.SHIPPED)
        self._move(OrderStatus.DELIVERED)

        wallet = self._wallet()
        self.assertEqual(wallet.pending_balance, Decimal('0'))
        self.assertEqual(wallet.balance, Decimal('23.75'))
        sale = self.db.execute(select(WalletTransaction).where(WalletTransaction.order_id == self.order.id)).scalar_one()
        self.assertEqual(sale.status, WalletTransactionStatus.COMPLETED)
        self.assertEqual(sale.meta['grossAmount'], '25.00')

        changes = self.db.execute(
            select(Notification).where(
                Notification.user_id == self.client_user.id,
                Notification.type == NotificationType.ORDER_STATUS_CHANGED,
            )
        ).scalars().all()
        self.assertEqual(len(changes), 3)

    def test_cancelling_confirmed_order_reverses_sale_and_restores_stock(self) -> None:
        self._move(OrderStatus.CONFIRMED)
        self._move(OrderStatus.CANCELLED)

        wallet = self._wallet()
        self.assertEqual(wallet.pending_balance, Decimal('0'))
        self.assertEqual(wallet.total_earned, Decimal('0'))
        sale = self.db.execute(select(WalletTransaction).where(WalletTransaction.order_id == self.order.id)).scalar_one()
        self.assertEqual(sale.status, WalletTransactionStatus.CANCELLED)
        self.db.expire_all()
        self.assertEqual(self.db.get(Stock, self.product.id).quantity, Decimal('11'))

    def test_producer_cannot_skip_steps(self) -> None:
        with self.assertRaises(InvalidState):
            self._move(OrderStatus.DELIVERED)

    def test_invoice_pending_only_for_invoice_orders(self) -> None:
        self.order.status = OrderStatus.DELIVERED
        self.db.flush()
        self.assertEqual(allowed_transitions(self.producer_principal, self.order), frozenset())

        self.order.meta = {'paymentMethod': 'invoice'}
        self.db.flush()
        self.assertEqual(
            allowed_transitions(self.producer_principal, self.order), frozenset({OrderStatus.INVOICE_PENDING})
        )
        self._move(OrderStatus.INVOICE_PENDING)
        invoice = self.db.execute(select(Invoice).where(Invoice.order_id == self.order.id)).scalar_one()
        self.assertEqual(invoice.amount, Decimal('25.00'))

    def test_client_cannot_change_status(self) -> None:
        with self.assertRaises(Forbidden):
            self._move(OrderStatus.CONFIRMED, principal=principal_for(self.db, self.client_user))

    def test_other_producer_does_not_see_order(self) -> None:
        other_user, _other = make_producer(self.db, company_name='Autre Ferme')
        with self.assertRaises(NotFound):
            self._move(OrderStatus.CONFIRMED, principal=principal_for(self.db, other_user))

    def test_admin_needs_invoice_for_invoice_paid(self) -> None:
        with self.assertRaises(InvalidState) as ctx:
            self._move(OrderStatus.INVOICE_PAID, principal=principal_for(self.db, self.admin))
        self.assertEqual(ctx.exception.code, 'INVOICE_NOT_FOUND')

    def test_admin_can_only_cancel_a_draft(self) -> None:
        admin = principal_for(self.db, self.admin)
        draft = make_order(self.db, self.client_user, [(self.product, '1')])
        self.assertEqual(allowed_transitions(admin, draft), frozenset({OrderStatus.CANCELLED}))

        with self.assertRaises(InvalidState):
            change_order_status(self.db, principal=admin, order_id=draft.id, new_status=OrderStatus.CONFIRMED)
        self.assertEqual(self.db.execute(select(WalletTransaction)).scalars().all(), [])

        change_order_status(self.db, principal=admin, order_id=draft.id, new_status=OrderStatus.CANCELLED)
        self.db.expire_all()
        self.assertEqual(self.db.get(Stock, self.product.id).quantity, Decimal('10'))

    def test_cancelled_order_is_final(self) -> None:
        admin = principal_for(self.db, self.admin)
        self._move(OrderStatus.CANCELLED, principal=admin)
        with self.assertRaises(InvalidState):
            self._move(OrderStatus.CONFIRMED, principal=admin)
