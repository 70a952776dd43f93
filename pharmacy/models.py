import uuid
from django.db import models


class Medicine(models.Model):
    id = models.CharField(primary_key=True, max_length=32)
    name = models.CharField(max_length=200)
    category = models.CharField(max_length=100, blank=True)
    stock_qty = models.PositiveIntegerField(default=0)
    reorder_threshold = models.PositiveIntegerField(default=0)
    prescription_required = models.BooleanField(default=False)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    dosage = models.CharField(max_length=50, blank=True)
    unit = models.CharField(max_length=50, blank=True)
    # units taken per day; stands in for a richer dosage model
    daily_consumption_rate = models.FloatField(default=1.0)

    class Meta:
        db_table = 'medicines'
        ordering = ['name']

    def __str__(self):
        return f'{self.name} {self.dosage}'.strip()


class Patient(models.Model):
    id = models.CharField(primary_key=True, max_length=64)
    name = models.CharField(max_length=200)
    age = models.PositiveIntegerField(blank=True, null=True)
    member_id = models.CharField(max_length=50, blank=True)
    email = models.EmailField(blank=True)
    history = models.JSONField(default=list, blank=True)

    class Meta:
        db_table = 'patients'

    def __str__(self):
        return self.name


class Order(models.Model):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (PROCESSING, 'Processing'),
        (SHIPPED, 'Shipped'),
        (DELIVERED, 'Delivered'),
        (CANCELLED, 'Cancelled'),
    ]
    TERMINAL_STATUSES = (DELIVERED, CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='orders')
    medicine = models.ForeignKey(Medicine, on_delete=models.PROTECT, related_name='orders')
    qty = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PROCESSING)
    trace_id = models.CharField(max_length=64, db_index=True)
    prescription_ref = models.CharField(max_length=100, blank=True)
    dispatch_ref = models.CharField(max_length=100, blank=True)
    dispatch_acknowledged_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']


class OutboxMessage(models.Model):
    """At-least-once delivery record for side effects of a committed order."""

    TOPIC_DISPATCH = 'order.dispatch'

    PENDING = 'pending'
    DELIVERED = 'delivered'
    DEAD = 'dead'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (DELIVERED, 'Delivered'),
        (DEAD, 'Dead'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='outbox_messages')
    topic = models.CharField(max_length=50, default=TOPIC_DISPATCH)
    payload = models.JSONField(default=dict)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    next_attempt_at = models.DateTimeField(blank=True, null=True)
    delivered_at = models.DateTimeField(blank=True, null=True)
    dispatch_ref = models.CharField(max_length=100, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'outbox_messages'
        constraints = [
            models.UniqueConstraint(fields=['order', 'topic'], name='unique_outbox_topic_per_order'),
        ]


class FulfillmentRun(models.Model):
    """One orchestrator pipeline instance, from the first request to a terminal state."""

    GATHERING = 'gathering'
    VALIDATING = 'validating'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    COMMITTING = 'committing'
    DISPATCHING = 'dispatching'
    DONE = 'done'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'

    STATE_CHOICES = [
        (GATHERING, 'Gathering'),
        (VALIDATING, 'Validating'),
        (AWAITING_CONFIRMATION, 'Awaiting confirmation'),
        (COMMITTING, 'Committing'),
        (DISPATCHING, 'Dispatching'),
        (DONE, 'Done'),
        (REJECTED, 'Rejected'),
        (CANCELLED, 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    trace_id = models.CharField(max_length=64, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='fulfillment_runs')
    medicine = models.ForeignKey(
        Medicine, on_delete=models.PROTECT, related_name='fulfillment_runs', blank=True, null=True,
    )
    requested_medicine_id = models.CharField(max_length=32, blank=True)
    requested_medicine_name = models.CharField(max_length=200, blank=True)
    # raw extracted value; validated when the run enters validating
    qty = models.IntegerField(blank=True, null=True)
    prescription_ref = models.CharField(max_length=100, blank=True)
    locale = models.CharField(max_length=20, blank=True)
    state = models.CharField(max_length=30, choices=STATE_CHOICES, default=GATHERING)
    rejection_code = models.CharField(max_length=50, blank=True)
    rejection_message = models.TextField(blank=True)
    rejection_detail = models.JSONField(blank=True, null=True)
    order = models.OneToOneField(
        Order, on_delete=models.PROTECT, related_name='fulfillment_run', blank=True, null=True,
    )
    dispatch_status = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'fulfillment_runs'


class TraceSpan(models.Model):
    trace_id = models.CharField(max_length=64, db_index=True)
    step_name = models.CharField(max_length=50)
    from_state = models.CharField(max_length=30, blank=True)
    to_state = models.CharField(max_length=30, blank=True)
    input_summary = models.JSONField(default=dict, blank=True)
    output_summary = models.JSONField(default=dict, blank=True)
    started_at = models.DateTimeField()
    ended_at = models.DateTimeField()

    class Meta:
        db_table = 'trace_spans'
        ordering = ['started_at', 'id']
