"""
Fulfillment orchestrator: the state machine that turns one patient request
into at most one committed order.

    gathering → validating → awaiting_confirmation → committing → dispatching → done
                    │                                    │
                    └──────────────► rejected ◄──────────┘
    gathering / validating / awaiting_confirmation → cancelled

The machine enforces gating and ordering itself. Nothing an upstream caller
claims (an already-checked prescription, an implied "yes") skips a step.

Every transition records exactly one TraceSpan under the run's trace_id.
Rejections and misuse come back as RunResult objects; nothing raises across
this boundary.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import services
from .dispatch import DispatchResult
from .exceptions import (
    BaseAppException,
    BlockError,
    InsufficientStock,
    InvalidTransition,
    PrescriptionRequired,
    ValidationError,
)
from .intake import FulfillmentRequest, is_affirmative, parse_qty
from .models import FulfillmentRun, Order
from .refill import RefillPrediction, predict_refill
from .tracing import json_safe, new_trace_id, span

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = (
    FulfillmentRun.GATHERING,
    FulfillmentRun.VALIDATING,
    FulfillmentRun.AWAITING_CONFIRMATION,
)


@dataclass
class RunResult:
    """
    Outbound result of one orchestrator call.

    run is None only when no run could be loaded or created; error then says why.
    """

    trace_id: str
    run: FulfillmentRun | None = None
    missing_fields: list = field(default_factory=list)
    refill: RefillPrediction | None = None
    dispatch: DispatchResult | None = None
    error: BaseAppException | None = None

    @property
    def state(self):
        return self.run.state if self.run is not None else None

    @property
    def order(self):
        return self.run.order if self.run is not None else None

    @property
    def rejected(self):
        return self.state == FulfillmentRun.REJECTED

    @property
    def requires_confirmation(self):
        return self.state == FulfillmentRun.AWAITING_CONFIRMATION


class FulfillmentOrchestrator:
    def __init__(self, clock=None, dispatcher=None):
        self.clock = clock or timezone.now
        self.dispatcher = dispatcher or services.dispatch

    # ── public API ─────────────────────────────────────────────────────────

    def start(self, request: FulfillmentRequest) -> RunResult:
        trace_id = request.trace_id or new_trace_id()

        try:
            qty = parse_qty(request.qty)
        except ValidationError as exc:
            return RunResult(trace_id=trace_id, error=exc)

        try:
            patient = services.get_patient(request.patient_id)
        except ValidationError as exc:
            return RunResult(trace_id=trace_id, error=exc)

        try:
            with transaction.atomic():
                run = FulfillmentRun.objects.create(
                    trace_id=trace_id,
                    patient=patient,
                    requested_medicine_id=request.medicine_id,
                    requested_medicine_name=request.medicine_name,
                    qty=qty,
                    prescription_ref=request.prescription_ref,
                    locale=request.locale,
                    state=FulfillmentRun.GATHERING,
                )
        except IntegrityError:
            return RunResult(trace_id=trace_id, error=ValidationError(
                message=f"A fulfillment run with trace_id {trace_id!r} already exists.",
                code='DUPLICATE_TRACE',
                detail={'trace_id': trace_id},
                http_status=409,
            ))

        logger.info("[Orchestrator] run %s started for patient %s (source=%s)",
                    trace_id, patient.pk, request.source or '-')
        return self._advance(run)

    def gather(self, trace_id, medicine_id=None, medicine_name=None, qty=None, prescription_ref=None) -> RunResult:
        run = self._load(trace_id)
        if isinstance(run, RunResult):
            return run
        if run.state != FulfillmentRun.GATHERING:
            return self._not_allowed(run, 'gather')

        try:
            qty = parse_qty(qty)
        except ValidationError as exc:
            return self._result(run, error=exc)

        if medicine_id:
            run.requested_medicine_id = medicine_id
        if medicine_name:
            run.requested_medicine_name = medicine_name
        if qty is not None:
            run.qty = qty
        if prescription_ref:
            run.prescription_ref = prescription_ref
        run.save()

        return self._advance(run)

    def confirm(self, trace_id, signal) -> RunResult:
        affirmative = is_affirmative(signal)

        with transaction.atomic():
            run = self._load(trace_id, for_update=True)
            if isinstance(run, RunResult):
                return run
            if run.state != FulfillmentRun.AWAITING_CONFIRMATION:
                return self._not_allowed(run, 'confirm')

            if not affirmative:
                logger.info("[Orchestrator] run %s: signal is not an explicit confirmation, still waiting", trace_id)
                return self._result(run)

            with span(trace_id, 'confirm', from_state=run.state, input_summary={'signal': str(signal)[:100]}) as ctx:
                self._set_state(run, FulfillmentRun.COMMITTING)
                ctx.to_state = run.state
                ctx.output = {'confirmed': True}

            self._commit(run)

        # network I/O stays outside the commit transaction
        if run.state == FulfillmentRun.DISPATCHING:
            return self._result(run, dispatch=self._dispatch(run))
        return self._result(run)

    def cancel(self, trace_id, reason='') -> RunResult:
        with transaction.atomic():
            run = self._load(trace_id, for_update=True)
            if isinstance(run, RunResult):
                return run
            if run.state not in CANCELLABLE_STATES:
                return self._not_allowed(run, 'cancel')

            with span(trace_id, 'cancel', from_state=run.state, input_summary={'reason': reason}) as ctx:
                self._set_state(run, FulfillmentRun.CANCELLED)
                ctx.to_state = run.state
                ctx.output = {'cancelled': True}

        return self._result(run)

    def get(self, trace_id) -> RunResult:
        run = self._load(trace_id)
        if isinstance(run, RunResult):
            return run
        return self._result(run)

    def finish_stalled_runs(self, older_than=timedelta(minutes=5)) -> int:
        """
        Close runs left in dispatching by a crash after commit. Their orders
        are valid and the outbox sweep owns delivery, so they just move to done.
        """
        cutoff = self.clock() - older_than
        stalled = FulfillmentRun.objects.filter(state=FulfillmentRun.DISPATCHING, updated_at__lt=cutoff)
        finished = 0
        for run in stalled.select_related('order'):
            with span(run.trace_id, 'dispatch', from_state=run.state,
                      input_summary={'order_id': run.order_id, 'reconciled': True}) as ctx:
                run.dispatch_status = 'queued'
                self._set_state(run, FulfillmentRun.DONE)
                ctx.to_state = run.state
                ctx.output = {'status': 'queued'}
            finished += 1
        if finished:
            logger.warning("[Orchestrator] %d stalled run(s) moved to done, delivery left to the outbox", finished)
        return finished

    # ── steps ──────────────────────────────────────────────────────────────

    def _advance(self, run):
        missing = self._missing_fields(run)
        if missing:
            return self._result(run, missing_fields=missing)

        with span(run.trace_id, 'gather', from_state=run.state, input_summary={
            'medicine_id': run.requested_medicine_id,
            'medicine_name': run.requested_medicine_name,
            'qty': run.qty,
            'prescription_ref': run.prescription_ref,
        }) as ctx:
            self._set_state(run, FulfillmentRun.VALIDATING)
            ctx.to_state = run.state
            ctx.output = {'resolved': True}

        return self._validate(run)

    def _validate(self, run):
        with span(run.trace_id, 'validate', from_state=run.state, input_summary={
            'patient_id': run.patient_id,
            'medicine_id': run.requested_medicine_id,
            'medicine_name': run.requested_medicine_name,
            'qty': run.qty,
            'prescription_ref': run.prescription_ref,
        }) as ctx:
            try:
                medicine = services.find_medicine(run.requested_medicine_id, run.requested_medicine_name)
                run.medicine = medicine
                qty = services.validate_qty(run.qty)

                gate = services.check_prescription(medicine.pk, run.patient_id, run.prescription_ref)
                ctx.output['prescription'] = asdict(gate)
                if gate.required and not gate.satisfied:
                    raise PrescriptionRequired(
                        message=gate.message,
                        detail={'medicine_id': medicine.pk},
                    )

                stock = services.check_inventory(medicine.pk)
                ctx.output['inventory'] = asdict(stock)
                if not stock.available or qty > stock.stock_qty:
                    raise InsufficientStock(
                        message=f"Only {stock.stock_qty} unit(s) of {medicine.name} left, {qty} requested.",
                        detail={'medicine_id': medicine.pk, 'requested_qty': qty, 'stock_qty': stock.stock_qty},
                    )
            except (ValidationError, BlockError) as exc:
                self._reject(run, exc)
                ctx.output['rejection'] = exc.as_dict()
            else:
                self._set_state(run, FulfillmentRun.AWAITING_CONFIRMATION)
            ctx.to_state = run.state

        return self._result(run)

    def _commit(self, run):
        with span(run.trace_id, 'commit', from_state=run.state, input_summary={
            'patient_id': run.patient_id,
            'medicine_id': run.medicine_id,
            'qty': run.qty,
            'prescription_ref': run.prescription_ref,
        }) as ctx:
            try:
                order = services.create_order(
                    patient_id=run.patient_id,
                    medicine_id=run.medicine_id,
                    qty=run.qty,
                    trace_id=run.trace_id,
                    prescription_ref=run.prescription_ref,
                )
            except (ValidationError, BlockError) as exc:
                # stock or catalog changed since validating
                self._reject(run, exc)
                ctx.output = {'rejection': exc.as_dict()}
            else:
                run.order = order
                self._set_state(run, FulfillmentRun.DISPATCHING)
                ctx.output = {
                    'order_id': order.id,
                    'status': order.status,
                    'unit_price': order.unit_price,
                    'total_price': order.total_price,
                }
            ctx.to_state = run.state

    def _dispatch(self, run):
        with span(run.trace_id, 'dispatch', from_state=run.state, input_summary={'order_id': run.order_id}) as ctx:
            try:
                result = self.dispatcher(run.order_id)
            except Exception:
                # the order is committed; delivery is left to the reconciliation sweep
                logger.exception("[Orchestrator] run %s: dispatch of order %s failed", run.trace_id, run.order_id)
                result = DispatchResult(status='queued')

            run.dispatch_status = result.status
            self._set_state(run, FulfillmentRun.DONE)
            ctx.to_state = run.state
            ctx.output = asdict(result)
        return result

    # ── helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _missing_fields(run):
        missing = []
        if not (run.requested_medicine_id or run.requested_medicine_name):
            missing.append('medicine')
        if run.qty is None:
            missing.append('qty')
        return missing

    def _set_state(self, run, state):
        previous = run.state
        run.state = state
        run.save()
        logger.info("[Orchestrator] run %s: %s -> %s", run.trace_id, previous, state)

    def _reject(self, run, exc):
        run.rejection_code = exc.code
        run.rejection_message = exc.message
        run.rejection_detail = json_safe(exc.detail) if exc.detail is not None else None
        logger.info("[Orchestrator] run %s rejected: %s", run.trace_id, exc.code)
        self._set_state(run, FulfillmentRun.REJECTED)

    def _load(self, trace_id, for_update=False):
        qs = FulfillmentRun.objects.select_related('medicine', 'order', 'order__medicine')
        if for_update:
            qs = qs.select_for_update(of=('self',))
        try:
            return qs.get(trace_id=trace_id)
        except FulfillmentRun.DoesNotExist:
            return RunResult(trace_id=trace_id, error=ValidationError(
                message=f"No fulfillment run with trace_id {trace_id!r}.",
                code='RUN_NOT_FOUND',
                detail={'trace_id': trace_id},
                http_status=404,
            ))

    def _not_allowed(self, run, action):
        return self._result(run, error=InvalidTransition(
            message=f"Cannot {action} a run in state {run.state!r}.",
            detail={'trace_id': run.trace_id, 'state': run.state, 'action': action},
        ))

    def _result(self, run, missing_fields=None, dispatch=None, error=None):
        order = run.order
        refill = None
        if order is not None and order.status != Order.CANCELLED:
            refill = predict_refill(order, self.clock(), order.medicine.daily_consumption_rate)
        if dispatch is None and run.dispatch_status:
            dispatch = DispatchResult(status=run.dispatch_status, dispatch_ref=order.dispatch_ref if order else '')
        if missing_fields is None and run.state == FulfillmentRun.GATHERING:
            missing_fields = self._missing_fields(run)
        return RunResult(
            trace_id=run.trace_id,
            run=run,
            missing_fields=missing_fields or [],
            refill=refill,
            dispatch=dispatch,
            error=error,
        )
