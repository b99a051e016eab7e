from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from marketplace.errors import Conflict, InvalidState, ValidationFailed
from marketplace.models import (
    AdminLog,
    Notification,
    NotificationType,
    UserRole,
    Wallet,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
    WithdrawalStatus,
)
from marketplace.services.wallet_service import (
    normalize_iban,
    process_withdrawal,
    request_withdrawal,
    validate_withdrawal_amount,
)
from tests.factories import DatabaseTestCase, make_producer, make_user


class WithdrawalTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin = make_user(self.db, role=UserRole.ADMIN, name='Admin')
        self.producer_user, self.producer = make_producer(self.db)
        self.wallet = self.db.execute(select(Wallet).where(Wallet.producer_id == self.producer.id)).scalar_one()
        self.wallet.balance = Decimal('100.00')
        self.wallet.total_earned = Decimal('100.00')
        self.db.flush()

    def _request(self, amount: str):
        return request_withdrawal(
            self.db, producer_id=self.producer.id, user_id=self.producer_user.id, amount=Decimal(amount)
        )

    def test_amount_bounds(self) -> None:
        for amount, code in (('5.00', 'AMOUNT_TOO_LOW'), ('10000.01', 'AMOUNT_TOO_HIGH'), ('12.345', 'INVALID_AMOUNT')):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationFailed) as ctx:
                    validate_withdrawal_amount(Decimal(amount))
                self.assertEqual(ctx.exception.code, code)

    def test_iban_is_normalized(self) -> None:
        self.assertEqual(normalize_iban(' ch93 0076 2011 6238 5295 7 '), 'CH9300762011623852957')

    def test_request_over_balance_is_rejected_without_changes(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            self._request('150.00')
        self.assertEqual(ctx.exception.code, 'INSUFFICIENT_BALANCE')
        self.db.refresh(self.wallet)
        self.assertEqual(self.wallet.balance, Decimal('100.00'))
        self.assertEqual(self.wallet.pending_withdrawals, 0)

    def test_request_debits_balance_and_records_transaction(self) -> None:
        withdrawal = self._request('40.00')

        self.db.refresh(self.wallet)
        self.assertEqual(withdrawal.status, WithdrawalStatus.PENDING)
        self.assertEqual(withdrawal.bank_details['iban'], 'CH9300762011623852957')
        self.assertEqual(self.wallet.balance, Decimal('60.00'))
        self.assertEqual(self.wallet.pending_withdrawals, 1)
        tx = self.db.execute(
            select(WalletTransaction).where(WalletTransaction.withdrawal_id == withdrawal.id)
        ).scalar_one()
        self.assertEqual(tx.type, WalletTransactionType.WITHDRAWAL)
        self.assertEqual(tx.amount, Decimal('-40.00'))
        admin_notes = self.db.execute(select(Notification).where(Notification.user_id == self.admin.id)).scalars().all()
        self.assertEqual([n.type for n in admin_notes], [NotificationType.WITHDRAWAL_REQUESTED])

    def test_only_one_open_withdrawal(self) -> None:
        self._request('20.00')
        with self.assertRaises(Conflict) as ctx:
            self._request('20.00')
        self.assertEqual(ctx.exception.code, 'WITHDRAWAL_ALREADY_PENDING')

    def test_missing_bank_details(self) -> None:
        self.producer.iban = None
        self.db.flush()
        with self.assertRaises(ValidationFailed) as ctx:
            self._request('20.00')
        self.assertEqual(ctx.exception.code, 'MISSING_BANK_DETAILS')

    def test_malformed_iban(self) -> None:
        self.producer.iban = '1234'
        self.db.flush()
        with self.assertRaises(ValidationFailed) as ctx:
            self._request('20.00')
        self.assertEqual(ctx.exception.code, 'INVALID_IBAN')

    def test_completing_withdrawal_settles_wallet(self) -> None:
        withdrawal = self._request('40.00')

        process_withdrawal(
            self.db, admin_id=self.admin.id, withdrawal_id=withdrawal.id, status=WithdrawalStatus.COMPLETED,
            reference='VIR-001',
        )

        self.db.refresh(self.wallet)
        self.assertEqual(withdrawal.status, WithdrawalStatus.COMPLETED)
        self.assertEqual(withdrawal.reference, 'VIR-001')
        self.assertIsNotNone(withdrawal.processed_at)
        self.assertEqual(self.wallet.balance, Decimal('60.00'))
        self.assertEqual(self.wallet.total_withdrawn, Decimal('40.00'))
        self.assertEqual(self.wallet.pending_withdrawals, 0)
        tx = self.db.execute(
            select(WalletTransaction).where(WalletTransaction.withdrawal_id == withdrawal.id)
        ).scalar_one()
        self.assertEqual(tx.status, WalletTransactionStatus.COMPLETED)
        log = self.db.execute(select(AdminLog)).scalar_one()
        self.assertEqual(log.action, 'WITHDRAWAL_COMPLETED')

    def test_rejecting_withdrawal_requires_note_and_refunds(self) -> None:
        withdrawal = self._request('40.00')
        with self.assertRaises(ValidationFailed) as ctx:
            process_withdrawal(
                self.db, admin_id=self.admin.id, withdrawal_id=withdrawal.id, status=WithdrawalStatus.REJECTED
            )
        self.assertEqual(ctx.exception.code, 'NOTE_REQUIRED')

        process_withdrawal(
            self.db,
            admin_id=self.admin.id,
            withdrawal_id=withdrawal.id,
            status=WithdrawalStatus.REJECTED,
            note='IBAN au nom d\'un tiers',
        )

        self.db.refresh(self.wallet)
        self.assertEqual(self.wallet.balance, Decimal('100.00'))
        self.assertEqual(self.wallet.pending_withdrawals, 0)
        notes = self.db.execute(
            select(Notification).where(Notification.user_id == self.producer_user.id)
        ).scalars().all()
        self.assertEqual([n.type for n in notes], [NotificationType.WITHDRAWAL_REJECTED])

    def test_processing_keeps_money_in_flight(self) -> None:
        withdrawal = self._request('40.00')
        process_withdrawal(
            self.db, admin_id=self.admin.id, withdrawal_id=withdrawal.id, status=WithdrawalStatus.PROCESSING
        )
        self.db.refresh(self.wallet)
        self.assertEqual(withdrawal.status, WithdrawalStatus.PROCESSING)
        self.assertEqual(self.wallet.balance, Decimal('60.00'))
        self.assertEqual(self.wallet.pending_withdrawals, 1)

        with self.assertRaises(Conflict):
            self._request('10.00')

    def test_settled_withdrawal_cannot_be_processed_again(self) -> None:
        withdrawal = self._request('40.00')
        process_withdrawal(
            self.db, admin_id=self.admin.id, withdrawal_id=withdrawal.id, status=WithdrawalStatus.COMPLETED
        )
        with self.assertRaises(InvalidState):
            process_withdrawal(
                self.db, admin_id=self.admin.id, withdrawal_id=withdrawal.id, status=WithdrawalStatus.REJECTED,
                note='trop tard',
            )
