from __future__ import annotations

from sqlalchemy import func, select

from marketplace.errors import NotFound
from marketplace.models import AdminLog, Notification, NotificationType, Product, UserRole
from marketplace.services.audit_service import log_admin_action
from marketplace.services.notification_service import (
    create_notification_as_admin,
    list_notifications,
    mark_all_notifications_read,
    mark_notification_read,
    notify,
    notify_many,
)
from tests.factories import DatabaseTestCase, make_producer, make_product, make_user


class NotificationServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = make_user(self.db)

    def _notify(self, title: str, type: NotificationType = NotificationType.SYSTEM) -> bool:
        return notify(self.db, user_id=self.user.id, type=type, title=title, message='Bonjour')

    def test_failed_insert_does_not_abort_caller(self) -> None:
        _producer_user, producer = make_producer(self.db)
        product = make_product(self.db, producer, name='Carottes')

        with self.assertLogs('marketplace.services.notification_service', level='WARNING'):
            stored = notify(
                self.db, user_id=self.user.id, type=NotificationType.SYSTEM, title='Oups', message=None
            )

        self.assertFalse(stored)
        self.db.commit()
        self.assertEqual(self.db.get(Product, product.id).name, 'Carottes')
        self.assertEqual(self.db.execute(select(func.count(Notification.id))).scalar_one(), 0)

    def test_failed_admin_log_is_reported_not_raised(self) -> None:
        with self.assertLogs('marketplace.services.audit_service', level='ERROR'):
            self.assertFalse(
                log_admin_action(self.db, admin_id=self.user.id, action='TEST', entity_type=None, entity_id=1)
            )
        self.assertTrue(log_admin_action(self.db, admin_id=self.user.id, action='TEST', entity_type='USER', entity_id=1))
        self.assertEqual(self.db.execute(select(func.count(AdminLog.id))).scalar_one(), 1)

    def test_notify_many_skips_actor_and_duplicates(self) -> None:
        other = make_user(self.db)
        sent = notify_many(
            self.db,
            user_ids=[self.user.id, other.id, other.id],
            type=NotificationType.SYSTEM,
            title='Info',
            message='Bonjour',
            exclude_user_id=self.user.id,
        )
        self.assertEqual(sent, 1)

    def test_listing_counts_unread_and_pages(self) -> None:
        for idx in range(3):
            self._notify(f'Message {idx}')
        self._notify('Stock', type=NotificationType.LOW_STOCK)

        page = list_notifications(self.db, user_id=self.user.id, limit=2, offset=0)
        self.assertEqual(len(page['notifications']), 2)
        self.assertEqual(page['pagination']['total'], 4)
        self.assertTrue(page['pagination']['hasMore'])
        self.assertEqual(page['unreadCount'], 4)

        low_stock = list_notifications(self.db, user_id=self.user.id, type=NotificationType.LOW_STOCK)
        self.assertEqual([n['title'] for n in low_stock['notifications']], ['Stock'])

    def test_mark_read(self) -> None:
        self._notify('Un')
        self._notify('Deux')
        first = self.db.execute(select(Notification).order_by(Notification.id)).scalars().first()

        mark_notification_read(self.db, user_id=self.user.id, notification_id=first.id)
        self.assertEqual(list_notifications(self.db, user_id=self.user.id)['unreadCount'], 1)

        self.assertEqual(mark_all_notifications_read(self.db, user_id=self.user.id), 1)
        self.assertEqual(list_notifications(self.db, user_id=self.user.id, unread_only=True)['notifications'], [])

    def test_cannot_read_someone_elses_notification(self) -> None:
        self._notify('Privé')
        note = self.db.execute(select(Notification)).scalar_one()
        other = make_user(self.db)
        with self.assertRaises(NotFound):
            mark_notification_read(self.db, user_id=other.id, notification_id=note.id)

    def test_admin_notification_needs_existing_user(self) -> None:
        admin = make_user(self.db, role=UserRole.ADMIN)
        with self.assertRaises(NotFound) as ctx:
            create_notification_as_admin(
                self.db, user_id=9999, type=NotificationType.SYSTEM, title='Hello', message='World'
            )
        self.assertEqual(ctx.exception.code, 'USER_NOT_FOUND')
        notification = create_notification_as_admin(
            self.db, user_id=admin.id, type=NotificationType.SYSTEM, title='Hello', message='World'
        )
        self.assertEqual(notification.user_id, admin.id)
