"""
Trace recorder: one audit span per orchestrator step, correlated by trace_id.

Spans are append-only rows in TraceSpan. Storing a span must never block or
fail the business operation, so record_span() logs a TraceEmissionFailure
and returns None instead of raising.

Input summaries are redacted (PHARMACY_REDACTED_FIELDS) before they are stored.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .exceptions import TraceEmissionFailure
from .models import TraceSpan

logger = logging.getLogger(__name__)

DEFAULT_REDACTED_FIELDS = ('email', 'patient_name', 'prescription_ref', 'member_id')
REDACTED = '***'


def new_trace_id():
    return f'tr-{uuid.uuid4().hex}'


def json_safe(value):
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def redact(data):
    """Mask sensitive keys at any depth; returns a JSON-safe copy."""
    redacted_fields = set(getattr(settings, 'PHARMACY_REDACTED_FIELDS', DEFAULT_REDACTED_FIELDS))

    def _walk(value):
        if isinstance(value, dict):
            return {
                k: (REDACTED if k in redacted_fields and v not in (None, '') else _walk(v))
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [_walk(v) for v in value]
        return value

    return _walk(json_safe(data or {}))


def record_span(
    trace_id: str,
    step_name: str,
    input_summary: dict | None = None,
    output_summary: dict | None = None,
    from_state: str = '',
    to_state: str = '',
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
) -> TraceSpan | None:
    now = timezone.now()
    try:
        # savepoint: a failed insert must not poison an enclosing transaction
        with transaction.atomic():
            return TraceSpan.objects.create(
                trace_id=trace_id,
                step_name=step_name,
                from_state=from_state,
                to_state=to_state,
                input_summary=redact(input_summary),
                output_summary=json_safe(output_summary or {}),
                started_at=started_at or now,
                ended_at=ended_at or now,
            )
    except Exception as exc:
        failure = TraceEmissionFailure(
            f'Could not record span {step_name!r}',
            detail={'trace_id': trace_id, 'error': str(exc)},
        )
        logger.exception('[Trace] %s (trace_id=%s)', failure.message, trace_id)
        return None


@dataclass
class SpanContext:
    trace_id: str
    step_name: str
    from_state: str
    input_summary: dict
    to_state: str = ''
    output: dict = field(default_factory=dict)


@contextmanager
def span(trace_id, step_name, from_state='', input_summary=None):
    """
    Time a step and record it on exit.

    The body fills in ``ctx.to_state`` and ``ctx.output``. If the body raises,
    the span is still recorded with the error and the exception propagates.
    """
    ctx = SpanContext(
        trace_id=trace_id,
        step_name=step_name,
        from_state=from_state,
        input_summary=input_summary or {},
    )
    started_at = timezone.now()
    try:
        yield ctx
    except Exception as exc:
        ctx.output = {**ctx.output, 'error': f'{type(exc).__name__}: {exc}'}
        raise
    finally:
        record_span(
            trace_id=ctx.trace_id,
            step_name=ctx.step_name,
            input_summary=ctx.input_summary,
            output_summary=ctx.output,
            from_state=ctx.from_state,
            to_state=ctx.to_state,
            started_at=started_at,
            ended_at=timezone.now(),
        )


def get_trace(trace_id):
    return TraceSpan.objects.filter(trace_id=trace_id).order_by('started_at', 'id')
