from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from pharmacy.models import Medicine, Patient

MEDICINES = [
    {
        'id': 'MED001', 'name': 'Paracetamol', 'category': 'Analgesic', 'stock_qty': 150,
        'reorder_threshold': 50, 'prescription_required': False, 'dosage': '500mg',
        'unit_price': Decimal('5.50'), 'unit': 'Tablets',
    },
    {
        'id': 'MED002', 'name': 'Ibuprofen', 'category': 'NSAID', 'stock_qty': 15,
        'reorder_threshold': 30, 'prescription_required': False, 'dosage': '200mg',
        'unit_price': Decimal('8.20'), 'unit': 'Capsules',
    },
    {
        'id': 'MED003', 'name': 'Amoxicillin', 'category': 'Antibiotic', 'stock_qty': 45,
        'reorder_threshold': 20, 'prescription_required': True, 'dosage': '250mg',
        'unit_price': Decimal('15.00'), 'unit': 'Capsules',
    },
    {
        'id': 'MED004', 'name': 'Lisinopril', 'category': 'ACE Inhibitor', 'stock_qty': 120,
        'reorder_threshold': 40, 'prescription_required': True, 'dosage': '10mg',
        'unit_price': Decimal('12.00'), 'unit': 'Tablets',
    },
    {
        'id': 'MED005', 'name': 'Aspirin', 'category': 'Analgesic', 'stock_qty': 8,
        'reorder_threshold': 25, 'prescription_required': False, 'dosage': '81mg',
        'unit_price': Decimal('4.00'), 'unit': 'Tablets',
    },
]

PATIENTS = [
    {
        'id': 'patient123', 'name': 'John Doe', 'age': 45, 'member_id': 'CC-9988-AA',
        'email': 'john.doe@example.com',
        'history': ['Hypertension', 'Seasonal Allergies', 'Lower Back Pain'],
    },
    {
        'id': 'patient456', 'name': 'Sarah Smith', 'age': 32, 'member_id': 'CC-1122-BB',
        'email': 'sarah.s@example.com',
        'history': ['Asthma', 'Chronic Sinusitis'],
    },
]


class Command(BaseCommand):
    help = 'Load the reference catalog and demo patients. Safe to run repeatedly.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--reset-stock',
            action='store_true',
            help='Also reset stock levels of existing medicines to the reference values.',
        )

    @transaction.atomic
    def handle(self, *args, **options):
        for row in MEDICINES:
            data = dict(row)
            pk = data.pop('id')
            stock_qty = data.pop('stock_qty')
            medicine, created = Medicine.objects.update_or_create(pk=pk, defaults=data)
            # stock is live ledger state; only set it on first load unless asked
            if created or options['reset_stock']:
                medicine.stock_qty = stock_qty
                medicine.save(update_fields=['stock_qty'])

        for row in PATIENTS:
            data = dict(row)
            Patient.objects.update_or_create(pk=data.pop('id'), defaults=data)

        self.stdout.write(self.style.SUCCESS(
            f'Seeded {len(MEDICINES)} medicines and {len(PATIENTS)} patients.'
        ))
