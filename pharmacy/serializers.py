"""
Response serializers: ORM objects / result dataclasses → JSON-able dicts.

Output formatting only, no parsing or validation.
Request parsing and validation live in pharmacy/intake/.
"""

from django.conf import settings

from .orchestrator import RunResult


def _iso(value):
    return value.isoformat() if value is not None else None


def _money(value):
    return str(value) if value is not None else None


def serialize_medicine(medicine):
    return {
        'medicine_id': medicine.pk,
        'name': medicine.name,
        'category': medicine.category,
        'dosage': medicine.dosage,
        'unit': medicine.unit,
        'stock_qty': medicine.stock_qty,
        'reorder_threshold': medicine.reorder_threshold,
        'low_stock': medicine.stock_qty < medicine.reorder_threshold,
        'prescription_required': medicine.prescription_required,
        'unit_price': _money(medicine.unit_price),
    }


def serialize_order(order):
    """Order block of a fulfillment result."""
    return {
        'order_id': str(order.id),
        'status': order.status,
        'medicine_id': order.medicine_id,
        'qty': order.qty,
        'unit_price': _money(order.unit_price),
        'total_price': _money(order.total_price),
        'created_at': _iso(order.created_at),
        'estimated_delivery_days': getattr(settings, 'PHARMACY_DELIVERY_ESTIMATE_DAYS', 2),
    }


def serialize_order_detail(order):
    """Serialize order detail with status-dependent fields."""
    response = serialize_order(order)
    response.update({
        'patient_id': order.patient_id,
        'medicine_name': order.medicine.name,
        'trace_id': order.trace_id,
        'dispatch_ref': order.dispatch_ref or None,
        'dispatch_acknowledged_at': _iso(order.dispatch_acknowledged_at),
        'updated_at': _iso(order.updated_at),
    })
    if order.status in ('shipped', 'delivered', 'cancelled'):
        response['estimated_delivery_days'] = None
    return response


def serialize_refill(prediction):
    return {
        'exhaustion_date': _iso(prediction.exhaustion_date),
        'days_left': prediction.days_left,
        'alert': prediction.alert,
    }


def serialize_refill_alert(alert):
    return {
        'patient_id': alert.patient_id,
        'patient_name': alert.patient_name,
        'medicine_id': alert.medicine_id,
        'medicine_name': alert.medicine_name,
        'order_id': alert.order_id,
        'exhaustion_date': _iso(alert.exhaustion_date),
        'days_left': alert.days_left,
        'alert': alert.alert,
    }


def serialize_error(exc, trace_id=None):
    """Unified error body, the same shape exception_handler produces."""
    body = {'type': exc.type}
    body.update(exc.as_dict())
    if trace_id:
        body['trace_id'] = trace_id
    return body


def serialize_run_result(result: RunResult):
    """
    Outbound fulfillment result. Structured fields only; wording for the
    patient is the caller's job (locale is passed through for that).
    """
    if result.run is None:
        return serialize_error(result.error, trace_id=result.trace_id)

    run = result.run
    medicine = run.medicine
    response = {
        'trace_id': run.trace_id,
        'state': run.state,
        'patient_id': run.patient_id,
        'medicine': {
            'medicine_id': medicine.pk,
            'name': medicine.name,
            'prescription_required': medicine.prescription_required,
            'unit_price': _money(medicine.unit_price),
        } if medicine is not None else None,
        'qty': run.qty,
        'locale': run.locale or None,
        'requires_confirmation': result.requires_confirmation,
        'missing_fields': result.missing_fields,
        'order': serialize_order(result.order) if result.order is not None else None,
        'dispatch': {
            'status': result.dispatch.status,
            'dispatch_ref': result.dispatch.dispatch_ref or None,
        } if result.dispatch is not None else None,
        'refill': serialize_refill(result.refill) if result.refill is not None else None,
    }

    if result.rejected:
        response['rejection'] = {
            'code': run.rejection_code,
            'message': run.rejection_message,
            'detail': run.rejection_detail,
        }

    # misuse on an existing run, e.g. confirming twice
    if result.error is not None:
        response.update(serialize_error(result.error))

    return response


def serialize_trace(trace_id, spans):
    return {
        'trace_id': trace_id,
        'count': len(spans),
        'spans': [
            {
                'step_name': s.step_name,
                'from_state': s.from_state,
                'to_state': s.to_state,
                'input': s.input_summary,
                'output': s.output_summary,
                'started_at': _iso(s.started_at),
                'ended_at': _iso(s.ended_at),
            }
            for s in spans
        ],
    }


def serialize_dashboard(summary):
    return {
        'low_stock': [serialize_medicine(m) for m in summary['low_stock']],
        'refill_alerts': [serialize_refill_alert(a) for a in summary['refill_alerts']],
        'recent_orders': [
            {
                'order_id': str(o.id),
                'status': o.status,
                'patient_id': o.patient_id,
                'medicine_id': o.medicine_id,
                'medicine_name': o.medicine.name,
                'qty': o.qty,
                'total_price': _money(o.total_price),
                'created_at': _iso(o.created_at),
            }
            for o in summary['recent_orders']
        ],
    }
