"""Shared fixtures: an in-memory database per test and small row builders."""

from __future__ import annotations

import itertools
import unittest
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from marketplace.auth import Principal
from marketplace.db import build_engine, get_db
from marketplace.main import app
from marketplace.models import (
    Base,
    Order,
    OrderItem,
    OrderStatus,
    Producer,
    Product,
    Stock,
    User,
    UserRole,
)
from marketplace.security.passwords import hash_password
from marketplace.security.rate_limit import limiter
from marketplace.security.sessions import create_web_session
from marketplace.services.mock_payment_gateway import MockPaymentGateway
from marketplace.services.provider_factory import get_payment_gateway
from marketplace.services.wallet_service import get_or_create_wallet

PASSWORD = 'secret123'
PASSWORD_HASH = hash_password(PASSWORD)

_sequence = itertools.count(1)


def make_user(
    db: Session,
    *,
    role: UserRole = UserRole.CLIENT,
    email: str | None = None,
    name: str = 'Client Test',
    active: bool = True,
) -> User:
    user = User(
        email=email or f'user{next(_sequence)}@example.com',
        name=name,
        password_hash=PASSWORD_HASH,
        role=role,
        active=active,
    )
    db.add(user)
    db.flush()
    return user


def make_producer(
    db: Session,
    *,
    company_name: str = 'Ferme Test',
    iban: str | None = 'CH93 0076 2011 6238 5295 7',
) -> tuple[User, Producer]:
    user = make_user(db, role=UserRole.PRODUCER, name=company_name)
    producer = Producer(
        user_id=user.id,
        company_name=company_name,
        bank_name='Banque Test' if iban else None,
        bank_account_name=company_name if iban else None,
        iban=iban,
    )
    db.add(producer)
    db.flush()
    get_or_create_wallet(db, producer.id)
    return user, producer


def make_product(
    db: Session,
    producer: Producer,
    *,
    name: str = 'Pommes',
    price: str = '25.00',
    stock: str = '100',
    available: bool = True,
    accept_deferred: bool = False,
) -> Product:
    product = Product(
        producer_id=producer.id,
        name=name,
        price=Decimal(price),
        unit='kg',
        available=available,
        accept_deferred=accept_deferred,
        min_order_quantity=Decimal('0'),
    )
    db.add(product)
    db.flush()
    db.add(Stock(product_id=product.id, quantity=Decimal(stock), peak_quantity=Decimal(stock)))
    db.flush()
    return product


def make_order(
    db: Session,
    client: User,
    lines: list[tuple[Product, str]],
    *,
    status: OrderStatus = OrderStatus.DRAFT,
    meta: dict | None = None,
) -> Order:
    total = sum((product.price * Decimal(quantity) for product, quantity in lines), Decimal('0'))
    order = Order(user_id=client.id, status=status, total=total, meta=meta or {})
    db.add(order)
    db.flush()
    for product, quantity in lines:
        db.add(
            OrderItem(
                order_id=order.id,
                product_id=product.id,
                product_name=product.name,
                quantity=Decimal(quantity),
                price=product.price,
            )
        )
    db.flush()
    return order


def principal_for(db: Session, user: User) -> Principal:
    producer = db.execute(select(Producer).where(Producer.user_id == user.id)).scalar_one_or_none()
    return Principal(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        producer_id=producer.id if producer else None,
        active=user.active,
    )


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine('sqlite://')
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db = self.Session()

    def tearDown(self) -> None:
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()


class ApiTestCase(DatabaseTestCase):
    """Runs requests against the app with the test database and a mock gateway."""

    def setUp(self) -> None:
        super().setUp()
        self.gateway = MockPaymentGateway()
        self._previous_factory = getattr(app.state, 'session_factory', None)
        app.state.session_factory = self.Session

        def _test_db():
            with self.Session() as db:
                yield db

        app.dependency_overrides[get_db] = _test_db
        app.dependency_overrides[get_payment_gateway] = lambda: self.gateway
        limiter.reset()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        self.client.close()
        app.dependency_overrides.clear()
        app.state.session_factory = self._previous_factory
        limiter.reset()
        super().tearDown()

    def login(self, user: User) -> str:
        token = create_web_session(self.db, user.id, '127.0.0.1', 'tests')
        self.db.commit()
        return token

    def call(self, method: str, url: str, *, token: str | None = None, **kwargs):
        # The in-memory database is one shared connection; end the fixture transaction first.
        self.db.commit()
        headers = kwargs.pop('headers', {})
        if token:
            headers['Authorization'] = f'Bearer {token}'
        response = self.client.request(method, url, headers=headers, **kwargs)
        self.db.expire_all()
        return response
