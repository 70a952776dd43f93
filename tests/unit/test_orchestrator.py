"""
Orchestrator state machine tests.

Covers the acceptance scenarios end to end against the ledger:
  A  OTC happy path         gathering → ... → done, stock 15 → 14
  B  Rx without proof       rejected at validating, ledger unchanged
  C  stock 0                rejected at validating
  E  last unit, two runs    one order, the other rejected at commit
plus confirmation strictness, cancellation, misuse, dispatch failure and
the one-span-per-transition audit trail.
"""
from datetime import timedelta

import pytest
from django.utils import timezone

from pharmacy.dispatch import DispatchResult
from pharmacy.intake import FulfillmentRequest
from pharmacy.models import FulfillmentRun, Medicine, Order, OutboxMessage, TraceSpan
from pharmacy.orchestrator import FulfillmentOrchestrator
from tests.conftest import FulfillmentRunFactory, MedicineFactory, OrderFactory


def _request(**overrides):
    data = {'patient_id': 'patient123', 'medicine_id': 'MED002', 'qty': 1, 'trace_id': 'tr-test'}
    data.update(overrides)
    return FulfillmentRequest(**data)


def _spans(trace_id):
    return [(s.step_name, s.from_state, s.to_state) for s in TraceSpan.objects.filter(trace_id=trace_id)]


@pytest.fixture
def orchestrator(log_dispatch):
    return FulfillmentOrchestrator()


# -------------------------------------------------------------------
# Happy path
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestHappyPath:

    def test_validation_waits_for_confirmation(self, orchestrator, patient, otc_medicine):
        result = orchestrator.start(_request())

        assert result.state == FulfillmentRun.AWAITING_CONFIRMATION
        assert result.requires_confirmation is True
        assert result.error is None
        assert result.order is None
        assert Order.objects.count() == 0
        assert Medicine.objects.get(pk='MED002').stock_qty == 15

    def test_explicit_yes_commits_and_dispatches(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        result = orchestrator.confirm('tr-test', 'yes')

        assert result.state == FulfillmentRun.DONE
        assert result.order.status == Order.PROCESSING
        assert result.order.qty == 1
        assert str(result.order.total_price) == '8.20'
        assert result.order.trace_id == 'tr-test'
        assert result.dispatch.status == 'dispatched'
        assert result.dispatch.dispatch_ref.startswith('WH-')
        assert result.refill.days_left == 1
        assert Medicine.objects.get(pk='MED002').stock_qty == 14

    def test_one_span_per_transition(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        orchestrator.confirm('tr-test', 'yes')

        assert _spans('tr-test') == [
            ('gather', 'gathering', 'validating'),
            ('validate', 'validating', 'awaiting_confirmation'),
            ('confirm', 'awaiting_confirmation', 'committing'),
            ('commit', 'committing', 'dispatching'),
            ('dispatch', 'dispatching', 'done'),
        ]

    def test_medicine_by_name(self, orchestrator, patient, otc_medicine):
        result = orchestrator.start(_request(medicine_id='', medicine_name='ibuprofen'))

        assert result.state == FulfillmentRun.AWAITING_CONFIRMATION
        assert result.run.medicine_id == 'MED002'

    def test_trace_id_minted_when_missing(self, orchestrator, patient, otc_medicine):
        result = orchestrator.start(_request(trace_id=''))

        assert result.trace_id.startswith('tr-')
        assert FulfillmentRun.objects.get().trace_id == result.trace_id

    def test_get_returns_current_result(self, log_dispatch, patient, otc_medicine):
        FulfillmentOrchestrator().start(_request())
        FulfillmentOrchestrator().confirm('tr-test', 'yes')
        later = FulfillmentOrchestrator(clock=lambda: timezone.now() + timedelta(days=1))

        result = later.get('tr-test')

        assert result.state == FulfillmentRun.DONE
        assert result.dispatch.status == 'dispatched'
        assert result.refill.days_left == 0
        assert result.refill.alert is True


# -------------------------------------------------------------------
# Rejections at validating (B, C and malformed input)
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestValidationRejections:

    def test_prescription_required_without_proof(self, orchestrator, patient, rx_medicine):
        result = orchestrator.start(_request(medicine_id='MED003'))

        assert result.state == FulfillmentRun.REJECTED
        assert result.run.rejection_code == 'PRESCRIPTION_REQUIRED'
        assert Order.objects.count() == 0
        assert Medicine.objects.get(pk='MED003').stock_qty == 45

    def test_out_of_stock(self, orchestrator, patient, out_of_stock_medicine):
        result = orchestrator.start(_request(medicine_id='MED009'))

        assert result.state == FulfillmentRun.REJECTED
        assert result.run.rejection_code == 'INSUFFICIENT_STOCK'
        assert result.run.rejection_detail['stock_qty'] == 0

    def test_qty_above_stock(self, orchestrator, patient, otc_medicine):
        result = orchestrator.start(_request(qty=16))
        assert result.run.rejection_code == 'INSUFFICIENT_STOCK'

    def test_unknown_medicine(self, orchestrator, patient):
        result = orchestrator.start(_request(medicine_id='MED999'))
        assert result.run.rejection_code == 'MEDICINE_NOT_FOUND'

    @pytest.mark.parametrize('qty', [0, -3])
    def test_invalid_qty(self, orchestrator, patient, otc_medicine, qty):
        result = orchestrator.start(_request(qty=qty))
        assert result.run.rejection_code == 'INVALID_QTY'

    def test_rejection_is_one_span(self, orchestrator, patient, rx_medicine):
        orchestrator.start(_request(medicine_id='MED003'))

        assert _spans('tr-test')[-1] == ('validate', 'validating', 'rejected')
        validate = TraceSpan.objects.get(trace_id='tr-test', step_name='validate')
        assert validate.output_summary['prescription']['satisfied'] is False
        assert validate.output_summary['rejection']['code'] == 'PRESCRIPTION_REQUIRED'

    def test_rejected_run_cannot_be_confirmed(self, orchestrator, patient, rx_medicine):
        orchestrator.start(_request(medicine_id='MED003'))
        result = orchestrator.confirm('tr-test', 'yes')

        assert result.error.code == 'INVALID_TRANSITION'
        assert Order.objects.count() == 0


@pytest.mark.django_db
class TestPrescriptionAudit:

    def test_rx_order_has_satisfied_gate_span(self, orchestrator, patient, rx_medicine):
        orchestrator.start(_request(medicine_id='MED003', prescription_ref='RX-1'))
        result = orchestrator.confirm('tr-test', 'yes')

        assert result.state == FulfillmentRun.DONE
        order = Order.objects.get()
        validate = TraceSpan.objects.get(trace_id=order.trace_id, step_name='validate')
        assert validate.output_summary['prescription'] == {
            'required': True,
            'satisfied': True,
            'message': 'Prescription reference supplied for patient patient123.',
        }
        assert validate.input_summary['prescription_ref'] == '***'


# -------------------------------------------------------------------
# Gathering
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestGathering:

    def test_missing_fields_stay_in_gathering(self, orchestrator, patient):
        result = orchestrator.start(_request(medicine_id='', qty=None))

        assert result.state == FulfillmentRun.GATHERING
        assert result.missing_fields == ['medicine', 'qty']
        assert _spans('tr-test') == []

    def test_gather_completes_then_validates(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request(qty=None))
        result = orchestrator.gather('tr-test', qty=2)

        assert result.state == FulfillmentRun.AWAITING_CONFIRMATION
        assert result.run.qty == 2

    def test_gather_after_validation_is_invalid(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        result = orchestrator.gather('tr-test', qty=5)

        assert result.error.code == 'INVALID_TRANSITION'
        assert result.state == FulfillmentRun.AWAITING_CONFIRMATION
        assert FulfillmentRun.objects.get().qty == 1

    def test_qty_beyond_column_range_is_an_error(self, orchestrator, patient, otc_medicine):
        result = orchestrator.start(_request(qty=99999999999999999999))

        assert result.run is None
        assert result.error.code == 'VALIDATION_ERROR'
        assert result.error.http_status == 400
        assert FulfillmentRun.objects.count() == 0

    def test_gather_qty_beyond_column_range_is_an_error(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request(qty=None))
        result = orchestrator.gather('tr-test', qty='99999999999999999999')

        assert result.error.code == 'VALIDATION_ERROR'
        assert result.state == FulfillmentRun.GATHERING
        assert result.missing_fields == ['qty']
        assert FulfillmentRun.objects.get().qty is None

    def test_unknown_patient(self, orchestrator):
        result = orchestrator.start(_request(patient_id='nobody'))

        assert result.run is None
        assert result.error.code == 'PATIENT_NOT_FOUND'

    def test_duplicate_trace(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        result = orchestrator.start(_request())

        assert result.error.code == 'DUPLICATE_TRACE'
        assert FulfillmentRun.objects.count() == 1

    def test_unknown_run(self, orchestrator):
        assert orchestrator.get('tr-missing').error.code == 'RUN_NOT_FOUND'


# -------------------------------------------------------------------
# Confirmation
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestConfirmation:

    @pytest.mark.parametrize('signal', [None, '', 'maybe', '1', 'yes but make it 3', 'ok?'])
    def test_non_affirmative_signal_changes_nothing(self, orchestrator, patient, otc_medicine, signal):
        orchestrator.start(_request())
        result = orchestrator.confirm('tr-test', signal)

        assert result.state == FulfillmentRun.AWAITING_CONFIRMATION
        assert result.error is None
        assert Order.objects.count() == 0
        assert Medicine.objects.get(pk='MED002').stock_qty == 15
        assert [s[0] for s in _spans('tr-test')] == ['gather', 'validate']

    def test_confirm_twice_creates_one_order(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        orchestrator.confirm('tr-test', 'yes')
        second = orchestrator.confirm('tr-test', 'yes')

        assert second.error.code == 'INVALID_TRANSITION'
        assert second.state == FulfillmentRun.DONE
        assert Order.objects.count() == 1
        assert Medicine.objects.get(pk='MED002').stock_qty == 14


# -------------------------------------------------------------------
# Race for the last unit
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestLastUnitRace:

    def test_second_commit_is_rejected(self, orchestrator, patient):
        MedicineFactory(id='MED050', stock_qty=1)
        orchestrator.start(_request(medicine_id='MED050', trace_id='tr-a'))
        orchestrator.start(_request(medicine_id='MED050', trace_id='tr-b'))

        first = orchestrator.confirm('tr-a', 'yes')
        second = orchestrator.confirm('tr-b', 'yes')

        assert first.state == FulfillmentRun.DONE
        assert second.state == FulfillmentRun.REJECTED
        assert second.run.rejection_code == 'INSUFFICIENT_STOCK'
        assert Order.objects.count() == 1
        assert Medicine.objects.get(pk='MED050').stock_qty == 0
        assert _spans('tr-b')[-1] == ('commit', 'committing', 'rejected')

    def test_medicine_prescription_flag_changed_before_commit(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        Medicine.objects.filter(pk='MED002').update(prescription_required=True)

        result = orchestrator.confirm('tr-test', 'yes')

        assert result.run.rejection_code == 'PRESCRIPTION_REQUIRED'
        assert Order.objects.count() == 0


# -------------------------------------------------------------------
# Dispatch is best effort
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestDispatchFailure:

    def test_dispatcher_exception_still_done(self, patient, otc_medicine):
        def broken(order_id):
            raise RuntimeError('warehouse on fire')

        result = FulfillmentOrchestrator(dispatcher=broken).start(_request())
        result = FulfillmentOrchestrator(dispatcher=broken).confirm('tr-test', 'yes')

        assert result.state == FulfillmentRun.DONE
        assert result.dispatch.status == 'queued'
        assert result.order.status == Order.PROCESSING
        assert OutboxMessage.objects.get().status == OutboxMessage.PENDING

    def test_queued_dispatch(self, patient, otc_medicine):
        orchestrator = FulfillmentOrchestrator(dispatcher=lambda order_id: DispatchResult(status='queued'))
        orchestrator.start(_request())
        result = orchestrator.confirm('tr-test', 'yes')

        assert result.state == FulfillmentRun.DONE
        assert FulfillmentRun.objects.get().dispatch_status == 'queued'

    def test_stalled_dispatching_runs_are_finished(self, patient):
        order = OrderFactory(patient=patient)
        FulfillmentRunFactory(
            trace_id='tr-stalled', patient=patient, medicine=order.medicine, qty=order.qty,
            order=order, state=FulfillmentRun.DISPATCHING,
        )
        FulfillmentRun.objects.filter(trace_id='tr-stalled').update(updated_at=timezone.now() - timedelta(hours=1))

        assert FulfillmentOrchestrator().finish_stalled_runs() == 1

        run = FulfillmentRun.objects.get(trace_id='tr-stalled')
        assert run.state == FulfillmentRun.DONE
        assert run.dispatch_status == 'queued'
        assert _spans('tr-stalled') == [('dispatch', 'dispatching', 'done')]

    def test_recent_dispatching_runs_are_left_alone(self, patient):
        order = OrderFactory(patient=patient)
        FulfillmentRunFactory(patient=patient, order=order, state=FulfillmentRun.DISPATCHING)

        assert FulfillmentOrchestrator().finish_stalled_runs() == 0


# -------------------------------------------------------------------
# Cancellation
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCancel:

    def test_cancel_while_awaiting(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        result = orchestrator.cancel('tr-test', reason='changed my mind')

        assert result.state == FulfillmentRun.CANCELLED
        assert Medicine.objects.get(pk='MED002').stock_qty == 15
        assert _spans('tr-test')[-1] == ('cancel', 'awaiting_confirmation', 'cancelled')

    def test_cancel_while_gathering(self, orchestrator, patient):
        orchestrator.start(_request(qty=None))
        assert orchestrator.cancel('tr-test').state == FulfillmentRun.CANCELLED

    def test_cancelled_run_cannot_be_confirmed(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        orchestrator.cancel('tr-test')

        result = orchestrator.confirm('tr-test', 'yes')

        assert result.error.code == 'INVALID_TRANSITION'
        assert Order.objects.count() == 0

    def test_cannot_cancel_after_commit(self, orchestrator, patient, otc_medicine):
        orchestrator.start(_request())
        orchestrator.confirm('tr-test', 'yes')

        result = orchestrator.cancel('tr-test')

        assert result.error.code == 'INVALID_TRANSITION'
        assert result.state == FulfillmentRun.DONE
