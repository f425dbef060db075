from decimal import Decimal

from sqlalchemy import select

from pipeyard.db import SessionLocal, init_models
from pipeyard.models import Company, StorageLocation

DEMO_LOCATIONS = [
    ('Yard A', 'A-1', 100, Decimal('1000.00')),
    ('Yard A', 'A-2', 100, Decimal('1000.00')),
    ('Yard B', 'B-1', 250, Decimal('2500.00')),
]


def seed() -> None:
    init_models()
    with SessionLocal() as db:
        company = db.execute(select(Company).where(Company.email_domain == 'example.com')).scalar_one_or_none()
        if not company:
            db.add(Company(name='Example Drilling', email_domain='example.com'))

        for area, name, capacity, capacity_meters in DEMO_LOCATIONS:
            location = db.execute(select(StorageLocation).where(StorageLocation.name == name)).scalar_one_or_none()
            if not location:
                db.add(StorageLocation(area=area, name=name, capacity=capacity, capacity_meters=capacity_meters))

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
