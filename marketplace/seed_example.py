from decimal import Decimal

from sqlalchemy import select

from marketplace.db import SessionLocal
from marketplace.models import Producer, Product, Stock, StockAlert, User, UserRole
from marketplace.security.passwords import hash_password
from marketplace.services.wallet_service import get_or_create_wallet

DEMO_PRODUCTS = [
    ('Pommes Gala', 'kg', Decimal('4.50'), True, Decimal('120')),
    ('Miel de montagne', 'pot', Decimal('12.00'), True, Decimal('40')),
    ('Fromage d\'alpage', 'kg', Decimal('28.00'), False, Decimal('15')),
]


def _ensure_user(db, email: str, password: str, name: str, role: UserRole) -> User:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        user = User(email=email, name=name, password_hash=hash_password(password), role=role, active=True)
        db.add(user)
        db.flush()
    return user


def seed() -> None:
    with SessionLocal() as db:
        _ensure_user(db, 'admin@example.com', 'adminpass1', 'Admin', UserRole.ADMIN)
        _ensure_user(db, 'client@example.com', 'clientpass1', 'Client Demo', UserRole.CLIENT)
        farmer = _ensure_user(db, 'ferme@example.com', 'fermepass1', 'Ferme du Vallon', UserRole.PRODUCER)

        producer = db.execute(select(Producer).where(Producer.user_id == farmer.id)).scalar_one_or_none()
        if not producer:
            producer = Producer(
                user_id=farmer.id,
                company_name='Ferme du Vallon',
                address='Route du Vallon 3, 1630 Bulle',
                bank_name='Banque Cantonale',
                bank_account_name='Ferme du Vallon',
                iban='CH9300762011623852957',
            )
            db.add(producer)
            db.flush()
        get_or_create_wallet(db, producer.id)

        for name, unit, price, deferred, quantity in DEMO_PRODUCTS:
            product = db.execute(
                select(Product).where(Product.producer_id == producer.id, Product.name == name)
            ).scalar_one_or_none()
            if product:
                continue
            product = Product(
                producer_id=producer.id,
                name=name,
                unit=unit,
                price=price,
                accept_deferred=deferred,
                available=True,
            )
            db.add(product)
            db.flush()
            db.add(Stock(product_id=product.id, quantity=quantity, peak_quantity=quantity))
            db.add(StockAlert(product_id=product.id, threshold=Decimal('20'), percentage=True))

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
