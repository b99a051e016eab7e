from __future__ import annotations

import unittest
from datetime import datetime, timezone
from decimal import Decimal

from marketplace.errors import ValidationFailed
from marketplace.models import Order
from marketplace.services.order_metadata import (
    AdminNote,
    DeliveryInfo,
    OrderMetadata,
    dump_order_metadata,
    load_order_metadata,
    store_order_metadata,
    update_order_metadata,
)


class OrderMetadataTests(unittest.TestCase):
    def test_load_accepts_string_encoded_json(self) -> None:
        metadata = load_order_metadata('{"deliveryType": "pickup", "paymentMethod": "card"}')
        self.assertEqual(metadata.delivery_type, 'pickup')
        self.assertEqual(metadata.payment_method, 'card')

    def test_load_degrades_to_empty_on_garbage(self) -> None:
        for raw in (None, '', 'not json', '[1, 2]', 42, {'deliveryType': 'teleport'}):
            with self.subTest(raw=raw):
                self.assertEqual(load_order_metadata(raw), OrderMetadata())

    def test_store_round_trips_fields(self) -> None:
        order = Order(user_id=1, meta={})
        stored = store_order_metadata(
            order,
            OrderMetadata(
                delivery_type='delivery',
                delivery_info=DeliveryInfo(full_name='Ana', address='Rue 1', postal_code='1000', city='Lausanne'),
                payment_method='invoice',
                payment_status='PENDING',
            ),
        )
        self.assertEqual(order.meta['deliveryInfo']['postalCode'], '1000')
        self.assertEqual(order.meta['paymentMethod'], 'invoice')
        self.assertEqual(load_order_metadata(order.meta), stored)

    def test_delivery_requires_delivery_info(self) -> None:
        order = Order(user_id=1, meta={})
        with self.assertRaises(ValidationFailed) as ctx:
            store_order_metadata(order, OrderMetadata(delivery_type='delivery'))
        self.assertEqual(ctx.exception.code, 'MISSING_DELIVERY_INFO')

    def test_pickup_drops_delivery_info(self) -> None:
        order = Order(user_id=1, meta={})
        stored = store_order_metadata(
            order, OrderMetadata(delivery_type='pickup', delivery_info=DeliveryInfo(address='Rue 1', city='Sion'))
        )
        self.assertIsNone(stored.delivery_info)
        self.assertNotIn('deliveryInfo', order.meta)

    def test_update_merges_with_existing_values(self) -> None:
        order = Order(user_id=1, meta={'deliveryType': 'pickup', 'paymentMethod': 'card'})
        updated = update_order_metadata(order, payment_status='PAID', payment_notes='cash at market')
        self.assertEqual(updated.delivery_type, 'pickup')
        self.assertEqual(updated.payment_status, 'PAID')
        self.assertEqual(order.meta['paymentNotes'], 'cash at market')

    def test_numeric_postal_code_is_read_as_text(self) -> None:
        raw = {
            'deliveryType': 'delivery',
            'deliveryInfo': {'fullName': 'Ana', 'address': 'Rue 1', 'postalCode': 1950, 'city': 'Sion'},
            'paymentMethod': 'card',
        }
        metadata = load_order_metadata(raw)
        self.assertEqual(metadata.delivery_type, 'delivery')
        self.assertEqual(metadata.delivery_info.postal_code, '1950')
        self.assertEqual(metadata.payment_method, 'card')

    def test_one_invalid_field_does_not_discard_the_rest(self) -> None:
        raw = {
            'deliveryType': 'delivery',
            'deliveryInfo': {'address': 'Rue 1', 'city': 'Sion', 'phone': 'x' * 80},
            'paymentMethod': 'bitcoin',
            'legacyRef': 'A-17',
        }
        with self.assertLogs('marketplace.services.order_metadata', level='WARNING'):
            metadata = load_order_metadata(raw)
        self.assertEqual(metadata.delivery_type, 'delivery')
        self.assertEqual(metadata.delivery_info.city, 'Sion')
        self.assertIsNone(metadata.delivery_info.phone)
        self.assertIsNone(metadata.payment_method)
        self.assertEqual(raw['paymentMethod'], 'bitcoin')

    def test_update_keeps_fields_stored_next_to_an_invalid_one(self) -> None:
        order = Order(
            user_id=1,
            meta={
                'deliveryType': 'delivery',
                'deliveryInfo': {'address': 'Rue 1', 'postalCode': 1950, 'city': 'Sion'},
                'paymentMethod': 'card',
                'paidAt': 'hier',
                'legacyRef': 'A-17',
            },
        )
        update_order_metadata(order, payment_intent_id='pi_1')

        self.assertEqual(order.meta['deliveryType'], 'delivery')
        self.assertEqual(order.meta['deliveryInfo']['city'], 'Sion')
        self.assertEqual(order.meta['deliveryInfo']['postalCode'], '1950')
        self.assertEqual(order.meta['paymentMethod'], 'card')
        self.assertEqual(order.meta['paymentIntentId'], 'pi_1')
        self.assertEqual(order.meta['legacyRef'], 'A-17')
        self.assertNotIn('paidAt', order.meta)

    def test_admin_notes_round_trip(self) -> None:
        order = Order(user_id=1, meta={'deliveryType': 'pickup'})
        note = AdminNote(
            id='n1',
            content='Client rappelé',
            admin_id=3,
            admin_name='Admin',
            created_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
        )
        stored = update_order_metadata(order, admin_notes=[note])
        self.assertEqual(order.meta['adminNotes'][0]['content'], 'Client rappelé')
        self.assertEqual(load_order_metadata(order.meta).admin_notes, stored.admin_notes)

    def test_dump_serializes_fee_decimals(self) -> None:
        dumped = dump_order_metadata(
            OrderMetadata.model_validate(
                {'fees': {'subtotal': Decimal('25.00'), 'deliveryFee': Decimal('15.00'), 'total': Decimal('40.00')}}
            )
        )
        self.assertEqual(dumped['fees']['deliveryFee'], '15.00')


if __name__ == '__main__':
    unittest.main()
