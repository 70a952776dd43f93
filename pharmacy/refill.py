"""
Refill predictor.

predict_refill() is a pure function of (order, now, daily consumption rate):
no database access, and the same inputs always give the same answer.

    exhaustion_date = order.created_at + qty / daily_consumption_rate days
    days_left       = ceil((exhaustion_date - now) / 1 day)
    alert           = days_left <= PHARMACY_REFILL_ALERT_DAYS

Patient-level alerts use the most recent non-cancelled order per medicine as
the current supply. Earlier orders are treated as consumed, never summed.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings

from .models import Order
from .services import get_patient

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class RefillPrediction:
    exhaustion_date: datetime
    days_left: int
    alert: bool


@dataclass(frozen=True)
class RefillAlert:
    patient_id: str
    patient_name: str
    medicine_id: str
    medicine_name: str
    order_id: str
    exhaustion_date: datetime
    days_left: int
    alert: bool


def alert_threshold_days() -> int:
    return getattr(settings, 'PHARMACY_REFILL_ALERT_DAYS', 2)


def predict_refill(order, now: datetime, daily_consumption_rate: float = 1.0,
                   alert_days: int | None = None) -> RefillPrediction:
    """
    Raises:
        ValueError: daily_consumption_rate is zero or negative
    """
    if daily_consumption_rate <= 0:
        raise ValueError(f'daily_consumption_rate must be positive, got {daily_consumption_rate!r}')

    exhaustion_date = order.created_at + timedelta(days=order.qty / daily_consumption_rate)
    days_left = math.ceil((exhaustion_date - now).total_seconds() / SECONDS_PER_DAY)
    threshold = alert_threshold_days() if alert_days is None else alert_days

    return RefillPrediction(
        exhaustion_date=exhaustion_date,
        days_left=days_left,
        alert=days_left <= threshold,
    )


def _current_supply(orders):
    """Most recent order per (patient, medicine); orders must be newest first."""
    seen = set()
    for order in orders:
        key = (order.patient_id, order.medicine_id)
        if key in seen:
            continue
        seen.add(key)
        yield order


def _to_alert(order, now):
    prediction = predict_refill(order, now, order.medicine.daily_consumption_rate)
    return RefillAlert(
        patient_id=order.patient_id,
        patient_name=order.patient.name,
        medicine_id=order.medicine_id,
        medicine_name=order.medicine.name,
        order_id=str(order.id),
        exhaustion_date=prediction.exhaustion_date,
        days_left=prediction.days_left,
        alert=prediction.alert,
    )


def _supply_orders():
    return (
        Order.objects.exclude(status=Order.CANCELLED)
        .select_related('medicine', 'patient')
        .order_by('-created_at', '-id')
    )


def refill_alerts_for_patient(patient_id, now: datetime, only_alerts: bool = False) -> list[RefillAlert]:
    """
    One prediction per medicine the patient currently holds, soonest exhaustion first.

    Raises:
        ValidationError (PATIENT_NOT_FOUND)
    """
    get_patient(patient_id)
    alerts = [_to_alert(o, now) for o in _current_supply(_supply_orders().filter(patient_id=patient_id))]
    if only_alerts:
        alerts = [a for a in alerts if a.alert]
    return sorted(alerts, key=lambda a: (a.days_left, a.medicine_id))


def refill_alerts_for_all(now: datetime) -> list[RefillAlert]:
    """Every patient/medicine pair currently due for a refill."""
    alerts = [_to_alert(o, now) for o in _current_supply(_supply_orders())]
    return sorted((a for a in alerts if a.alert), key=lambda a: (a.days_left, a.patient_id, a.medicine_id))
