"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import pytest
from decimal import Decimal
from django.test import Client

import factory
from pharmacy.models import FulfillmentRun, Medicine, Order, Patient


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class MedicineFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Medicine

    id = factory.Sequence(lambda n: f'MED{n + 100:03d}')
    name = factory.Sequence(lambda n: f'Medicine {n}')
    category = 'Analgesic'
    stock_qty = 15
    reorder_threshold = 5
    prescription_required = False
    unit_price = Decimal('8.20')
    dosage = '200mg'
    unit = 'Tablets'
    daily_consumption_rate = 1.0


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    id = factory.Sequence(lambda n: f'patient{n}')
    name = 'John Doe'
    age = 45
    member_id = factory.Sequence(lambda n: f'CC-{n:04d}-AA')
    email = 'john.doe@example.com'
    history = factory.LazyFunction(lambda: ['Hypertension'])


class OrderFactory(factory.django.DjangoModelFactory):
    """Ledger rows for read-side tests. Real orders go through services.create_order()."""

    class Meta:
        model = Order

    patient = factory.SubFactory(PatientFactory)
    medicine = factory.SubFactory(MedicineFactory)
    qty = 10
    unit_price = factory.LazyAttribute(lambda o: o.medicine.unit_price)
    total_price = factory.LazyAttribute(lambda o: o.medicine.unit_price * o.qty)
    status = Order.PROCESSING
    trace_id = factory.Sequence(lambda n: f'tr-factory-{n}')


class FulfillmentRunFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = FulfillmentRun

    trace_id = factory.Sequence(lambda n: f'tr-run-{n}')
    patient = factory.SubFactory(PatientFactory)
    state = FulfillmentRun.GATHERING


def set_created_at(order, created_at):
    """created_at is auto_now_add; move it after the fact."""
    Order.objects.filter(pk=order.pk).update(created_at=created_at)
    order.refresh_from_db()
    return order


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def patient():
    return PatientFactory(id='patient123', name='John Doe')


@pytest.fixture
def otc_medicine():
    """Over-the-counter medicine, stock 15."""
    return MedicineFactory(id='MED002', name='Ibuprofen', stock_qty=15, unit_price=Decimal('8.20'))


@pytest.fixture
def rx_medicine():
    return MedicineFactory(
        id='MED003', name='Amoxicillin', stock_qty=45, prescription_required=True,
        unit_price=Decimal('15.00'),
    )


@pytest.fixture
def out_of_stock_medicine():
    return MedicineFactory(id='MED009', name='Cetirizine', stock_qty=0)


@pytest.fixture
def log_dispatch(settings):
    settings.PHARMACY_DISPATCH_BACKEND = 'log'
    return settings
