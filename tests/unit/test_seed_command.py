from io import StringIO

import pytest
from django.core.management import call_command

from pharmacy.models import Medicine, Patient


def _seed(*args):
    out = StringIO()
    call_command('seed_pharmacy', *args, stdout=out)
    return out.getvalue()


@pytest.mark.django_db
class TestSeedPharmacy:

    def test_loads_reference_data(self):
        output = _seed()

        assert 'Seeded 5 medicines and 2 patients' in output
        assert Medicine.objects.get(pk='MED003').prescription_required is True
        assert Medicine.objects.get(pk='MED002').stock_qty == 15
        assert Patient.objects.get(pk='patient123').name == 'John Doe'

    def test_rerun_keeps_live_stock(self):
        _seed()
        Medicine.objects.filter(pk='MED002').update(stock_qty=3)

        _seed()

        assert Medicine.objects.count() == 5
        assert Medicine.objects.get(pk='MED002').stock_qty == 3

    def test_reset_stock(self):
        _seed()
        Medicine.objects.filter(pk='MED002').update(stock_qty=3)

        _seed('--reset-stock')

        assert Medicine.objects.get(pk='MED002').stock_qty == 15
