"""
HTTP surface for the upstream agent layer and operators.

Views stay thin: parse → call the orchestrator or a service → serialize.
Exceptions raised by services are formatted by exception_handler; run
results carry their own rejection/error blocks.
"""

import uuid

from django.http import JsonResponse
from django.utils import timezone
from rest_framework.views import APIView

from . import services
from .exceptions import ValidationError
from .intake import get_adapter, parse_qty
from .orchestrator import FulfillmentOrchestrator
from .refill import refill_alerts_for_patient
from .serializers import (
    serialize_dashboard,
    serialize_medicine,
    serialize_order_detail,
    serialize_refill_alert,
    serialize_run_result,
    serialize_trace,
)
from .tracing import get_trace


def run_response(result, success_status=200):
    """Rejected runs are a normal outcome (200); errors use the error's status."""
    body = serialize_run_result(result)
    status = result.error.http_status if result.error is not None else success_status
    return JsonResponse(body, status=status)


def _body(request):
    data = request.data
    if not isinstance(data, dict):
        raise ValidationError(message='Request body must be a JSON object.', code='INVALID_JSON')
    return data


class FulfillmentStartView(APIView):
    """POST /api/fulfillment/ - start a run from an upstream request"""

    def post(self, request):
        source = request.headers.get('X-Request-Source', 'direct')
        adapter = get_adapter(source, request.body, content_type=request.content_type or '')
        fulfillment_request = adapter.process()

        result = FulfillmentOrchestrator().start(fulfillment_request)
        return run_response(result, success_status=201)


class FulfillmentDetailView(APIView):
    """GET /api/fulfillment/<trace_id>/"""

    def get(self, request, trace_id):
        return run_response(FulfillmentOrchestrator().get(trace_id))


class FulfillmentGatherView(APIView):
    """POST /api/fulfillment/<trace_id>/gather/ - add extracted fields"""

    def post(self, request, trace_id):
        data = _body(request)
        qty = parse_qty(data.get('qty'))
        result = FulfillmentOrchestrator().gather(
            trace_id,
            medicine_id=str(data.get('medicine_id') or '').strip() or None,
            medicine_name=str(data.get('medicine_name') or '').strip() or None,
            qty=qty,
            prescription_ref=str(data.get('prescription_ref') or '').strip() or None,
        )
        return run_response(result)


class FulfillmentConfirmView(APIView):
    """POST /api/fulfillment/<trace_id>/confirm/ - {"confirmation": "yes"}"""

    def post(self, request, trace_id):
        signal = _body(request).get('confirmation')
        return run_response(FulfillmentOrchestrator().confirm(trace_id, signal))


class FulfillmentCancelView(APIView):
    """POST /api/fulfillment/<trace_id>/cancel/"""

    def post(self, request, trace_id):
        reason = str(_body(request).get('reason') or '')
        return run_response(FulfillmentOrchestrator().cancel(trace_id, reason))


class OrderDetailView(APIView):
    """GET /api/orders/<order_id>/"""

    def get(self, request, order_id):
        order = services.get_order(order_id)
        return JsonResponse(serialize_order_detail(order))


class PatientRefillsView(APIView):
    """GET /api/patients/<patient_id>/refills/?alerts_only=1"""

    def get(self, request, patient_id):
        only_alerts = request.query_params.get('alerts_only', '').lower() in ('1', 'true', 'yes')
        alerts = refill_alerts_for_patient(patient_id, timezone.now(), only_alerts=only_alerts)
        return JsonResponse({
            'patient_id': patient_id,
            'count': len(alerts),
            'refills': [serialize_refill_alert(a) for a in alerts],
        })


class InventoryListView(APIView):
    """GET /api/inventory/"""

    def get(self, request):
        medicines = [serialize_medicine(m) for m in services.list_medicines()]
        return JsonResponse({'count': len(medicines), 'medicines': medicines})


class LowStockView(APIView):
    """GET /api/inventory/low-stock/"""

    def get(self, request):
        medicines = [serialize_medicine(m) for m in services.low_stock_medicines()]
        return JsonResponse({'count': len(medicines), 'medicines': medicines})


class DashboardView(APIView):
    """GET /api/dashboard/ - low stock, due refills, recent orders"""

    def get(self, request):
        return JsonResponse(serialize_dashboard(services.dashboard_summary(timezone.now())))


class TraceView(APIView):
    """GET /api/traces/<trace_id>/ - audit spans of one run, in order"""

    def get(self, request, trace_id):
        spans = list(get_trace(trace_id))
        if not spans:
            raise ValidationError(
                message=f"No spans recorded for trace_id {trace_id!r}.",
                code='TRACE_NOT_FOUND',
                detail={'trace_id': trace_id},
                http_status=404,
            )
        return JsonResponse(serialize_trace(trace_id, spans))


class DispatchAckView(APIView):
    """POST /api/dispatch/ack/ - {"order_id", "dispatch_ref", "status"} from the fulfillment system"""

    def post(self, request):
        data = _body(request)
        try:
            order_id = uuid.UUID(str(data.get('order_id') or ''))
        except ValueError:
            raise ValidationError(
                message='order_id must be a UUID.',
                code='VALIDATION_ERROR',
                detail={'errors': [{'field': 'order_id', 'message': 'order_id must be a UUID.'}]},
            )

        order = services.receive_dispatch_ack(
            order_id=order_id,
            dispatch_ref=str(data.get('dispatch_ref') or ''),
            status=str(data.get('status') or 'dispatched').lower(),
        )
        return JsonResponse({'received': True, 'order_id': str(order.id), 'status': order.status}, status=202)
