import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from .dispatch import DispatchResult, get_dispatch_client
from .exceptions import (
    BlockError,
    DispatchFailure,
    InsufficientStock,
    MedicineNotFound,
    PrescriptionRequired,
    ValidationError,
)
from .intake.base import MAX_QTY
from .models import Medicine, Order, OutboxMessage, Patient
from .tracing import json_safe

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Catalog store
# ---------------------------------------------------------------------------

def get_medicine(medicine_id):
    """Get medicine by ID. Raises MedicineNotFound."""
    try:
        return Medicine.objects.get(pk=medicine_id)
    except Medicine.DoesNotExist:
        raise MedicineNotFound(
            message=f"Unknown medicine {medicine_id!r}",
            detail={'medicine_id': medicine_id},
        )


def find_medicine(medicine_id=None, medicine_name=None):
    """
    Resolve what the upstream extraction produced.

    - medicine_id given → exact lookup, no fallback to the name
    - only medicine_name → case-insensitive exact name match
    """
    if medicine_id:
        return get_medicine(medicine_id)

    name = (medicine_name or '').strip()
    if name:
        medicine = Medicine.objects.filter(name__iexact=name).first()
        if medicine is not None:
            return medicine

    raise MedicineNotFound(
        message=f"Unknown medicine {name or medicine_id!r}",
        detail={'medicine_id': medicine_id, 'medicine_name': name},
    )


def list_medicines():
    return Medicine.objects.all()


def low_stock_medicines():
    """Medicines below their reorder threshold."""
    return Medicine.objects.filter(stock_qty__lt=F('reorder_threshold')).order_by('stock_qty')


# ---------------------------------------------------------------------------
# Patient record store (read-only)
# ---------------------------------------------------------------------------

def get_patient(patient_id):
    try:
        return Patient.objects.get(pk=patient_id)
    except Patient.DoesNotExist:
        raise ValidationError(
            message=f"Unknown patient {patient_id!r}",
            code='PATIENT_NOT_FOUND',
            detail={'patient_id': patient_id},
            http_status=404,
        )


def get_patient_history(patient_id):
    """Orders of one patient, newest first."""
    return (
        Order.objects.filter(patient_id=patient_id)
        .select_related('medicine')
        .order_by('-created_at')
    )


# ---------------------------------------------------------------------------
# Safety gate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrescriptionCheck:
    required: bool
    satisfied: bool
    message: str


def check_prescription(medicine_id, patient_id, prescription_ref=None):
    """
    Prescription requirement check. No side effects.

    satisfied is True only when nothing is required, or when the caller
    supplies proof (a prescription reference). Consent is never inferred.
    """
    medicine = get_medicine(medicine_id)

    if not medicine.prescription_required:
        return PrescriptionCheck(required=False, satisfied=True, message='No prescription required (OTC).')

    if (prescription_ref or '').strip():
        return PrescriptionCheck(
            required=True,
            satisfied=True,
            message=f"Prescription reference supplied for patient {patient_id}.",
        )

    return PrescriptionCheck(
        required=True,
        satisfied=False,
        message=f"{medicine.name} requires a prescription on file; no proof supplied.",
    )


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InventoryCheck:
    stock_qty: int
    available: bool
    unit_price: Decimal


@dataclass(frozen=True)
class Reservation:
    medicine_id: str
    qty: int
    new_stock_qty: int
    unit_price: Decimal


def validate_qty(qty):
    """qty must be a positive integer (bool is not a quantity) that fits the qty columns."""
    if isinstance(qty, bool) or not isinstance(qty, int) or not 0 < qty <= MAX_QTY:
        raise ValidationError(
            message=f"qty must be a positive integer, got {qty!r}",
            code='INVALID_QTY',
            detail={'qty': qty},
        )
    return qty


def check_inventory(medicine_id):
    """Pure read of the stock counter."""
    medicine = get_medicine(medicine_id)
    return InventoryCheck(
        stock_qty=medicine.stock_qty,
        available=medicine.stock_qty > 0,
        unit_price=medicine.unit_price,
    )


@transaction.atomic
def reserve_and_commit(medicine_id, qty):
    """
    Atomic check-and-decrement of one medicine's stock.

    Uses select_for_update() so concurrent requests for the same medicine
    are serialized: with one unit left, exactly one of two requests wins
    and the other gets InsufficientStock. Never clamps.

    Only create_order() calls this, so a decrement always belongs to an order.

    Returns:
        Reservation with the new stock level and the unit price observed
        under the lock (the price the order is frozen at).
    """
    validate_qty(qty)

    try:
        medicine = Medicine.objects.select_for_update().get(pk=medicine_id)
    except Medicine.DoesNotExist:
        raise MedicineNotFound(
            message=f"Unknown medicine {medicine_id!r}",
            detail={'medicine_id': medicine_id},
        )

    if qty > medicine.stock_qty:
        raise InsufficientStock(
            message=f"Only {medicine.stock_qty} unit(s) of {medicine.name} left, {qty} requested.",
            detail={'medicine_id': medicine_id, 'requested_qty': qty, 'stock_qty': medicine.stock_qty},
        )

    medicine.stock_qty -= qty
    medicine.save(update_fields=['stock_qty'])

    return Reservation(
        medicine_id=medicine.pk,
        qty=qty,
        new_stock_qty=medicine.stock_qty,
        unit_price=medicine.unit_price,
    )


@transaction.atomic
def release_stock(medicine_id, qty):
    """Compensating increment, used when a committed order is cancelled."""
    validate_qty(qty)
    medicine = Medicine.objects.select_for_update().get(pk=medicine_id)
    medicine.stock_qty += qty
    medicine.save(update_fields=['stock_qty'])
    return medicine.stock_qty


# ---------------------------------------------------------------------------
# Order ledger
# ---------------------------------------------------------------------------

ORDER_STATUS_FLOW = {
    Order.PENDING: (Order.PROCESSING, Order.CANCELLED),
    Order.PROCESSING: (Order.SHIPPED, Order.DELIVERED, Order.CANCELLED),
    Order.SHIPPED: (Order.DELIVERED,),
}


def build_dispatch_payload(order):
    return json_safe({
        'order_id': order.id,
        'patient_id': order.patient_id,
        'medicine_id': order.medicine_id,
        'medicine_name': order.medicine.name,
        'qty': order.qty,
        'trace_id': order.trace_id,
        'created_at': order.created_at,
    })


@transaction.atomic
def create_order(patient_id, medicine_id, qty, trace_id, prescription_ref=None):
    """
    Commit one order as a single unit of work:
    safety gate → reserve_and_commit → Order(status=processing) → dispatch outbox row.

    Any failure rolls the whole unit back, so there is exactly one Order and
    one stock decrement, or neither.

    Raises:
        ValidationError (PATIENT_NOT_FOUND / INVALID_QTY), MedicineNotFound,
        PrescriptionRequired, InsufficientStock
    """
    patient = get_patient(patient_id)

    # the ledger enforces the gate itself, whatever the caller claims
    gate = check_prescription(medicine_id, patient_id, prescription_ref)
    if gate.required and not gate.satisfied:
        raise PrescriptionRequired(
            message=gate.message,
            detail={'medicine_id': medicine_id, 'patient_id': patient_id},
        )

    reservation = reserve_and_commit(medicine_id, qty)
    total_price = (reservation.unit_price * qty).quantize(Decimal('0.01'))

    order = Order.objects.create(
        patient=patient,
        medicine_id=reservation.medicine_id,
        qty=qty,
        unit_price=reservation.unit_price,
        total_price=total_price,
        status=Order.PROCESSING,
        trace_id=trace_id,
        prescription_ref=(prescription_ref or '').strip(),
    )

    OutboxMessage.objects.create(
        order=order,
        topic=OutboxMessage.TOPIC_DISPATCH,
        payload=build_dispatch_payload(order),
        next_attempt_at=timezone.now(),
    )

    logger.info("[Order] order %s committed: %s x%d, total=%s, stock now %d (trace_id=%s)",
                order.id, medicine_id, qty, total_price, reservation.new_stock_qty, trace_id)
    return order


def _fetch_order(queryset, order_id):
    try:
        return queryset.get(id=order_id)
    except Order.DoesNotExist:
        raise BlockError(
            message='Order not found',
            code='ORDER_NOT_FOUND',
            detail={'order_id': str(order_id)},
            http_status=404,
        )


def get_order(order_id):
    """Get order by ID. Raises BlockError if not found."""
    return _fetch_order(Order.objects.select_related('medicine', 'patient'), order_id)


def _lock_order(order_id):
    return _fetch_order(Order.objects.select_for_update(), order_id)


@transaction.atomic
def update_order_status(order_id, new_status):
    """
    Advance an order along pending → processing → shipped → delivered,
    or cancel it. Delivered and cancelled orders are immutable.
    Cancelling a committed order releases its stock. Repeating the
    current status is a no-op.
    """
    order = _lock_order(order_id)

    if order.status == new_status:
        return order

    if order.status in Order.TERMINAL_STATUSES:
        raise BlockError(
            message=f"Order {order.id} is {order.status} and can no longer change.",
            code='ORDER_IMMUTABLE',
            detail={'order_id': str(order.id), 'status': order.status, 'requested_status': new_status},
        )

    if new_status not in ORDER_STATUS_FLOW.get(order.status, ()):
        raise BlockError(
            message=f"Order {order.id} cannot move from {order.status} to {new_status}.",
            code='INVALID_STATUS_TRANSITION',
            detail={'order_id': str(order.id), 'status': order.status, 'requested_status': new_status},
        )

    if new_status == Order.CANCELLED and order.status == Order.PROCESSING:
        release_stock(order.medicine_id, order.qty)

    previous = order.status
    order.status = new_status
    order.save(update_fields=['status', 'updated_at'])
    logger.info("[Order] order %s: %s -> %s", order.id, previous, new_status)
    return order


# ---------------------------------------------------------------------------
# Dispatch notifier (outbox)
# ---------------------------------------------------------------------------

# ack status → order status; None means "acknowledged, status unchanged"
ACK_STATUS_MAP = {
    'dispatched': None,
    'received': None,
    'processing': None,
    'shipped': Order.SHIPPED,
    'delivered': Order.DELIVERED,
    'cancelled': Order.CANCELLED,
}


def _retry_delay(attempts):
    # exponential backoff: base → 2×base → 4×base ...
    base = getattr(settings, 'PHARMACY_DISPATCH_RETRY_BASE_SECONDS', 30)
    return timedelta(seconds=base * (2 ** max(attempts - 1, 0)))


def _deliver_locked(message, client, now):
    """One delivery attempt for a locked, pending outbox message. Client errors never propagate."""
    max_attempts = getattr(settings, 'PHARMACY_DISPATCH_MAX_ATTEMPTS', 5)
    timeout = getattr(settings, 'PHARMACY_DISPATCH_TIMEOUT_SECONDS', 5)

    message.attempts += 1
    try:
        receipt = client.notify(message.payload, idempotency_key=str(message.order_id), timeout=timeout)
    except DispatchFailure as exc:
        error = exc.message
    except Exception as exc:
        # a broken backend counts as a failed attempt, the sweep moves on
        logger.exception("[Dispatch] order %s: unexpected error from %s",
                         message.order_id, type(client).__name__)
        error = f"{type(exc).__name__}: {exc}"
    else:
        error = None

    if error is not None:
        message.last_error = error
        if message.attempts >= max_attempts:
            message.status = OutboxMessage.DEAD
            message.next_attempt_at = None
            logger.error("[Dispatch] order %s gave up after %d attempts, needs manual reconciliation: %s",
                         message.order_id, message.attempts, error)
        else:
            message.next_attempt_at = now + _retry_delay(message.attempts)
            logger.warning("[Dispatch] order %s attempt %d failed, next try at %s: %s",
                           message.order_id, message.attempts, message.next_attempt_at.isoformat(), error)
        message.save(update_fields=['attempts', 'last_error', 'status', 'next_attempt_at'])
        status = 'dead' if message.status == OutboxMessage.DEAD else 'queued'
        return DispatchResult(status=status)

    message.status = OutboxMessage.DELIVERED
    message.delivered_at = now
    message.next_attempt_at = None
    message.last_error = ''
    message.dispatch_ref = receipt.dispatch_ref
    message.save(update_fields=['attempts', 'status', 'delivered_at', 'next_attempt_at', 'last_error', 'dispatch_ref'])

    if receipt.dispatch_ref:
        Order.objects.filter(pk=message.order_id, dispatch_ref='').update(dispatch_ref=receipt.dispatch_ref)

    logger.info("[Dispatch] order %s delivered (ref=%s, attempt %d)",
                message.order_id, receipt.dispatch_ref or '-', message.attempts)
    return DispatchResult(status='dispatched', dispatch_ref=receipt.dispatch_ref)


def deliver_outbox_message(message_id, client=None, now=None):
    """
    Attempt delivery of one outbox message under a row lock.

    A message another worker holds, or one already delivered, is skipped
    and reported as it stands.
    """
    now = now or timezone.now()
    with transaction.atomic():
        message = (
            OutboxMessage.objects.select_for_update(skip_locked=True)
            .filter(pk=message_id)
            .first()
        )
        if message is None:
            return DispatchResult(status='queued')
        if message.status == OutboxMessage.DELIVERED:
            return DispatchResult(status='dispatched', dispatch_ref=message.dispatch_ref)
        if message.status == OutboxMessage.DEAD:
            return DispatchResult(status='dead')
        return _deliver_locked(message, client or get_dispatch_client(), now)


def dispatch(order_id, client=None):
    """
    Best-effort notification of the fulfillment system for a committed order.

    One synchronous attempt with a bounded timeout; failures are logged,
    left pending in the outbox and picked up by the reconciliation sweep.
    The order stays valid at processing either way.
    """
    message = (
        OutboxMessage.objects
        .filter(order_id=order_id, topic=OutboxMessage.TOPIC_DISPATCH)
        .values_list('pk', flat=True)
        .first()
    )
    if message is None:
        logger.error("[Dispatch] order %s has no dispatch outbox message", order_id)
        return DispatchResult(status='queued')
    return deliver_outbox_message(message, client=client)


def requeue_unacknowledged_orders():
    """
    Processing orders without an acknowledgement and without a dispatch
    message (e.g. restored from backup) get one, so the sweep covers them.
    """
    orphans = (
        Order.objects
        .filter(status=Order.PROCESSING, dispatch_acknowledged_at__isnull=True)
        .exclude(outbox_messages__topic=OutboxMessage.TOPIC_DISPATCH)
        .select_related('medicine')
    )
    requeued = 0
    for order in orphans:
        _, created = OutboxMessage.objects.get_or_create(
            order=order,
            topic=OutboxMessage.TOPIC_DISPATCH,
            defaults={'payload': build_dispatch_payload(order), 'next_attempt_at': timezone.now()},
        )
        requeued += int(created)
    return requeued


def reconcile_pending_dispatches(now=None, client=None, batch_size=100):
    """
    Reconciliation sweep: deliver every pending dispatch message that is due.

    Returns a count per outcome.
    """
    now = now or timezone.now()
    counts = {'requeued': requeue_unacknowledged_orders(), 'attempted': 0, 'dispatched': 0, 'queued': 0, 'dead': 0}

    due = (
        OutboxMessage.objects
        .filter(status=OutboxMessage.PENDING, topic=OutboxMessage.TOPIC_DISPATCH)
        .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
        .order_by('created_at')
        .values_list('pk', flat=True)[:batch_size]
    )
    client = client or get_dispatch_client()
    for message_id in list(due):
        result = deliver_outbox_message(message_id, client=client, now=now)
        counts['attempted'] += 1
        counts[result.status] += 1

    if counts['attempted']:
        logger.info("[Dispatch] reconciliation sweep: %s", counts)
    return counts


@transaction.atomic
def receive_dispatch_ack(order_id, dispatch_ref='', status='dispatched'):
    """
    Fire-and-forget acknowledgement from the fulfillment system.

    Idempotent: repeating an ack changes nothing. An ack also settles the
    outbox message, whatever the state of our own delivery attempts.
    """
    if status not in ACK_STATUS_MAP:
        raise ValidationError(
            message=f"Unknown dispatch status {status!r}",
            code='INVALID_ACK_STATUS',
            detail={'status': status, 'known_statuses': list(ACK_STATUS_MAP)},
        )

    order = _lock_order(order_id)
    target = ACK_STATUS_MAP[status]

    if order.status not in Order.TERMINAL_STATUSES:
        changed = []
        if dispatch_ref and order.dispatch_ref != dispatch_ref:
            order.dispatch_ref = dispatch_ref
            changed.append('dispatch_ref')
        if order.dispatch_acknowledged_at is None:
            order.dispatch_acknowledged_at = timezone.now()
            changed.append('dispatch_acknowledged_at')
        if changed:
            order.save(update_fields=changed + ['updated_at'])

        OutboxMessage.objects.filter(
            order=order, topic=OutboxMessage.TOPIC_DISPATCH,
        ).exclude(status=OutboxMessage.DELIVERED).update(
            status=OutboxMessage.DELIVERED,
            delivered_at=timezone.now(),
            next_attempt_at=None,
            dispatch_ref=dispatch_ref or order.dispatch_ref,
        )

    if target is not None:
        order = update_order_status(order.id, target)

    logger.info("[Dispatch] ack for order %s: status=%s ref=%s", order.id, status, dispatch_ref or '-')
    return order


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

def dashboard_summary(now=None, recent_limit=20):
    """Low stock, patients due for a refill, most recent orders."""
    from .refill import refill_alerts_for_all

    now = now or timezone.now()
    return {
        'low_stock': list(low_stock_medicines()),
        'refill_alerts': refill_alerts_for_all(now),
        'recent_orders': list(
            Order.objects.select_related('medicine', 'patient').order_by('-created_at')[:recent_limit]
        ),
    }
