from __future__ import annotations

from decimal import Decimal

from marketplace.errors import NotFound
from marketplace.models import OrderStatus, UserRole
from marketplace.services.order_scope import (
    OrderFilters,
    OrderScope,
    get_order_detail,
    get_order_summary,
    list_orders,
    producer_pending_count,
)
from tests.factories import DatabaseTestCase, make_order, make_producer, make_product, make_user, principal_for


class OrderScopeTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.alice = make_user(self.db, name='Alice', email='alice@example.com')
        self.bob = make_user(self.db, name='Bob', email='bob@example.com')
        self.admin = make_user(self.db, role=UserRole.ADMIN, name='Admin')
        self.farm_user, self.farm = make_producer(self.db, company_name='Ferme A')
        self.dairy_user, self.dairy = make_producer(self.db, company_name='Laiterie B')
        self.apples = make_product(self.db, self.farm, name='Pommes', price='4.00')
        self.cheese = make_product(self.db, self.dairy, name='Fromage', price='20.00')

        self.mixed = make_order(
            self.db, self.alice, [(self.apples, '2'), (self.cheese, '1')], status=OrderStatus.PENDING
        )
        self.cheese_only = make_order(self.db, self.bob, [(self.cheese, '1')], status=OrderStatus.CONFIRMED)
        self.draft = make_order(self.db, self.alice, [(self.apples, '1')])

    def _scope(self, user) -> OrderScope:
        return OrderScope(principal_for(self.db, user))

    def test_client_lists_own_non_draft_orders(self) -> None:
        result = list_orders(self.db, self._scope(self.alice), OrderFilters())
        self.assertEqual([order['id'] for order in result['orders']], [self.mixed.id])
        self.assertEqual(result['pagination']['total'], 1)

    def test_client_can_ask_for_drafts_explicitly(self) -> None:
        result = list_orders(self.db, self._scope(self.alice), OrderFilters(status=OrderStatus.DRAFT))
        self.assertEqual([order['id'] for order in result['orders']], [self.draft.id])

    def test_producer_sees_only_orders_and_lines_with_their_products(self) -> None:
        result = list_orders(self.db, self._scope(self.farm_user), OrderFilters())
        self.assertEqual([order['id'] for order in result['orders']], [self.mixed.id])
        order = result['orders'][0]
        self.assertEqual([item['productName'] for item in order['items']], ['Pommes'])
        self.assertEqual(order['producerSubtotal'], Decimal('8.00'))

        dairy = list_orders(self.db, self._scope(self.dairy_user), OrderFilters())
        self.assertEqual(sorted(order['id'] for order in dairy['orders']), sorted([self.mixed.id, self.cheese_only.id]))

    def test_out_of_scope_order_looks_missing(self) -> None:
        with self.assertRaises(NotFound):
            get_order_detail(self.db, self._scope(self.bob), self.mixed.id)
        with self.assertRaises(NotFound):
            get_order_detail(self.db, self._scope(self.farm_user), self.cheese_only.id)

    def test_admin_sees_everything(self) -> None:
        result = list_orders(self.db, self._scope(self.admin), OrderFilters())
        self.assertEqual(result['pagination']['total'], 2)
        detail = get_order_detail(self.db, self._scope(self.admin), self.mixed.id)
        self.assertEqual(len(detail['items']), 2)
        self.assertNotIn('producerSubtotal', detail)

    def test_search_by_customer_and_order_number(self) -> None:
        scope = self._scope(self.admin)
        by_name = list_orders(self.db, scope, OrderFilters(search='bob'))
        self.assertEqual([order['id'] for order in by_name['orders']], [self.cheese_only.id])
        by_id = list_orders(self.db, scope, OrderFilters(search=str(self.mixed.id)))
        self.assertIn(self.mixed.id, [order['id'] for order in by_id['orders']])

    def test_summary_for_producer_excludes_other_lines(self) -> None:
        summary = get_order_summary(self.db, self._scope(self.farm_user), self.mixed.id)
        self.assertEqual(summary['subtotal'], Decimal('8.00'))
        self.assertEqual(summary['total'], Decimal('8.00'))

    def test_pending_count_per_producer(self) -> None:
        self.assertEqual(producer_pending_count(self.db, producer_id=self.farm.id), 1)
        self.assertEqual(producer_pending_count(self.db, producer_id=self.dairy.id), 1)
