from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from marketplace.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from marketplace.models import Booking, BookingStatus, DeliverySlot, Notification, NotificationType, OrderStatus, Stock
from marketplace.security.sessions import as_utc
from marketplace.services.catalog_service import (
    create_delivery_slot,
    create_product,
    list_available_slots,
    list_products,
    update_product,
)
from marketplace.services.order_lines import lines_for_order
from marketplace.services.order_service import (
    book_delivery_slot,
    expire_temporary_bookings,
    get_draft_order,
    remove_booking,
)
from marketplace.services.stock_service import (
    add_schedule_entry,
    get_stock,
    list_schedule,
    set_alert_settings,
    should_alert,
    update_stock,
)
from tests.factories import DatabaseTestCase, make_producer, make_product, make_user, principal_for


class CatalogTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.producer_user, self.producer = make_producer(self.db)
        self.principal = principal_for(self.db, self.producer_user)

    def test_create_product_requires_name_and_price(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            create_product(self.db, producer_id=self.producer.id, fields={'name': ' ', 'price': Decimal('3')})
        self.assertEqual(ctx.exception.code, 'MISSING_FIELDS')

        product = create_product(
            self.db,
            producer_id=self.producer.id,
            fields={'name': ' Oeufs ', 'price': Decimal('6.50'), 'unit': 'douzaine'},
            initial_stock=Decimal('30'),
        )
        self.assertEqual(product.name, 'Oeufs')
        stock = self.db.get(Stock, product.id)
        self.assertEqual(stock.quantity, Decimal('30'))
        self.assertEqual(stock.peak_quantity, Decimal('30'))

    def test_list_filters(self) -> None:
        make_product(self.db, self.producer, name='Pommes', price='4.00')
        make_product(self.db, self.producer, name='Miel', price='12.00', accept_deferred=True)
        make_product(self.db, self.producer, name='Poires', price='5.00', available=False)

        cheap = list_products(self.db, max_price=Decimal('5'), available=True)
        self.assertEqual([p['name'] for p in cheap['products']], ['Pommes'])
        deferred = list_products(self.db, accept_deferred=True)
        self.assertEqual([p['name'] for p in deferred['products']], ['Miel'])
        search = list_products(self.db, search='POI')
        self.assertEqual(search['pagination']['total'], 1)

    def test_other_producer_cannot_edit(self) -> None:
        product = make_product(self.db, self.producer)
        other_user, _ = make_producer(self.db, company_name='Autre')
        with self.assertRaises(Forbidden) as ctx:
            update_product(
                self.db, principal=principal_for(self.db, other_user), product_id=product.id, fields={'price': 1}
            )
        self.assertEqual(ctx.exception.code, 'FORBIDDEN_PRODUCER')

    def test_slot_booking_reserves_capacity(self) -> None:
        product = make_product(self.db, self.producer, price='10.00')
        slot = create_delivery_slot(
            self.db,
            principal=self.principal,
            product_id=product.id,
            date=datetime.now(tz=timezone.utc) + timedelta(days=2),
            max_capacity=Decimal('5'),
        )
        client = make_user(self.db)

        booking = book_delivery_slot(self.db, user_id=client.id, slot_id=slot.id, quantity=Decimal('3'))
        self.assertEqual(booking.status, BookingStatus.TEMPORARY)
        order = get_draft_order(self.db, client.id)
        self.assertEqual(order.status, OrderStatus.DRAFT)
        self.assertEqual(order.total, Decimal('30.00'))
        self.assertEqual([line.kind for line in lines_for_order(self.db, order.id)], ['booking'])

        with self.assertRaises(Conflict) as ctx:
            book_delivery_slot(self.db, user_id=client.id, slot_id=slot.id, quantity=Decimal('3'))
        self.assertEqual(ctx.exception.code, 'SLOT_FULL')
        self.db.refresh(slot)
        self.assertEqual(slot.reserved, Decimal('3'))
        self.assertEqual([s.id for s in list_available_slots(self.db, product_id=product.id)], [slot.id])

    def test_past_slot_is_rejected(self) -> None:
        product = make_product(self.db, self.producer)
        with self.assertRaises(ValidationFailed):
            create_delivery_slot(
                self.db,
                principal=self.principal,
                product_id=product.id,
                date=datetime.now(tz=timezone.utc) - timedelta(hours=1),
                max_capacity=Decimal('5'),
            )
        self.assertEqual(self.db.execute(select(DeliverySlot)).scalars().all(), [])

    def _slot(self, product, capacity: str = '5') -> DeliverySlot:
        return create_delivery_slot(
            self.db,
            principal=self.principal,
            product_id=product.id,
            date=datetime.now(tz=timezone.utc) + timedelta(days=2),
            max_capacity=Decimal(capacity),
        )

    def test_expired_hold_is_cancelled_and_frees_capacity(self) -> None:
        product = make_product(self.db, self.producer, price='10.00')
        slot = self._slot(product)
        client = make_user(self.db)
        booking = book_delivery_slot(self.db, user_id=client.id, slot_id=slot.id, quantity=Decimal('2'))
        self.assertGreater(as_utc(booking.expires_at), datetime.now(tz=timezone.utc) + timedelta(minutes=60))

        self.assertEqual(expire_temporary_bookings(self.db), [])
        booking.expires_at = datetime.now(tz=timezone.utc) - timedelta(minutes=1)
        self.db.flush()

        self.assertEqual(expire_temporary_bookings(self.db), [booking.id])
        self.db.refresh(slot)
        self.db.refresh(booking)
        self.assertEqual(slot.reserved, Decimal('0'))
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(get_draft_order(self.db, client.id).total, Decimal('0.00'))
        self.assertEqual(expire_temporary_bookings(self.db), [])

    def test_client_removes_booking_from_draft(self) -> None:
        product = make_product(self.db, self.producer, price='10.00')
        slot = self._slot(product)
        client = make_user(self.db)
        booking = book_delivery_slot(self.db, user_id=client.id, slot_id=slot.id, quantity=Decimal('3'))
        booking_id = booking.id

        stranger = make_user(self.db, name='Autre Client')
        with self.assertRaises(NotFound):
            remove_booking(self.db, principal=principal_for(self.db, stranger), booking_id=booking_id)

        order = remove_booking(self.db, principal=principal_for(self.db, client), booking_id=booking_id)
        self.assertEqual(order.total, Decimal('0.00'))
        self.assertIsNone(self.db.get(Booking, booking_id))
        self.db.refresh(slot)
        self.assertEqual(slot.reserved, Decimal('0'))

    def test_booking_of_checked_out_order_cannot_be_removed(self) -> None:
        product = make_product(self.db, self.producer, price='10.00')
        slot = self._slot(product)
        client = make_user(self.db)
        booking = book_delivery_slot(self.db, user_id=client.id, slot_id=slot.id, quantity=Decimal('1'))
        get_draft_order(self.db, client.id).status = OrderStatus.PENDING
        self.db.flush()
        with self.assertRaises(InvalidState):
            remove_booking(self.db, principal=principal_for(self.db, client), booking_id=booking.id)


class StockTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.producer_user, self.producer = make_producer(self.db)
        self.principal = principal_for(self.db, self.producer_user)
        self.product = make_product(self.db, self.producer, stock='100')

    def _low_stock_notes(self) -> list[Notification]:
        return self.db.execute(
            select(Notification).where(Notification.type == NotificationType.LOW_STOCK)
        ).scalars().all()

    def test_default_alert_fires_only_when_empty(self) -> None:
        self.assertFalse(should_alert(Decimal('1'), Decimal('10'), None))
        self.assertTrue(should_alert(Decimal('0'), Decimal('10'), None))

    def test_percentage_alert_notifies_once_when_crossing(self) -> None:
        set_alert_settings(
            self.db, principal=self.principal, product_id=self.product.id, threshold=Decimal('20'), percentage=True
        )

        result = update_stock(self.db, principal=self.principal, product_id=self.product.id, quantity=Decimal('30'))
        self.assertFalse(result['shouldAlert'])
        self.assertEqual(self._low_stock_notes(), [])

        result = update_stock(self.db, principal=self.principal, product_id=self.product.id, quantity=Decimal('15'))
        self.assertTrue(result['shouldAlert'])
        update_stock(self.db, principal=self.principal, product_id=self.product.id, quantity=Decimal('10'))
        notes = self._low_stock_notes()
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].user_id, self.producer_user.id)

    def test_restock_raises_peak(self) -> None:
        update_stock(self.db, principal=self.principal, product_id=self.product.id, quantity=Decimal('150'))
        stock = get_stock(self.db, product_id=self.product.id)
        self.assertEqual(stock['peakQuantity'], Decimal('150'))

    def test_percentage_threshold_above_100_is_rejected(self) -> None:
        with self.assertRaises(ValidationFailed):
            set_alert_settings(
                self.db, principal=self.principal, product_id=self.product.id, threshold=Decimal('120'), percentage=True
            )

    def test_private_schedule_entries_are_hidden_from_public(self) -> None:
        today = date.today()
        add_schedule_entry(
            self.db, principal=self.principal, product_id=self.product.id, on=today + timedelta(days=7),
            quantity=Decimal('50'), note='Récolte', is_public=True,
        )
        add_schedule_entry(
            self.db, principal=self.principal, product_id=self.product.id, on=today + timedelta(days=14),
            quantity=Decimal('20'), note='Interne', is_public=False,
        )
        add_schedule_entry(
            self.db, principal=self.principal, product_id=self.product.id, on=today - timedelta(days=7),
            quantity=Decimal('10'), is_public=True,
        )

        public = list_schedule(self.db, principal=None, product_id=self.product.id, future=True)
        self.assertEqual([entry['note'] for entry in public], ['Récolte'])
        own = list_schedule(self.db, principal=self.principal, product_id=self.product.id)
        self.assertEqual(len(own), 3)

    def test_schedule_entry_requires_date_and_quantity(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            add_schedule_entry(
                self.db, principal=self.principal, product_id=self.product.id, on=None, quantity=Decimal('5')
            )
        self.assertEqual(ctx.exception.code, 'MISSING_FIELDS')
