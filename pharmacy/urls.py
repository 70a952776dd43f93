from django.urls import path
from .views import (
    DashboardView,
    DispatchAckView,
    FulfillmentCancelView,
    FulfillmentConfirmView,
    FulfillmentDetailView,
    FulfillmentGatherView,
    FulfillmentStartView,
    InventoryListView,
    LowStockView,
    OrderDetailView,
    PatientRefillsView,
    TraceView,
)

urlpatterns = [
    path('fulfillment/', FulfillmentStartView.as_view(), name='fulfillment-start'),
    path('fulfillment/<str:trace_id>/', FulfillmentDetailView.as_view(), name='fulfillment-detail'),
    path('fulfillment/<str:trace_id>/gather/', FulfillmentGatherView.as_view(), name='fulfillment-gather'),
    path('fulfillment/<str:trace_id>/confirm/', FulfillmentConfirmView.as_view(), name='fulfillment-confirm'),
    path('fulfillment/<str:trace_id>/cancel/', FulfillmentCancelView.as_view(), name='fulfillment-cancel'),
    path('orders/<uuid:order_id>/', OrderDetailView.as_view(), name='order-detail'),
    path('patients/<str:patient_id>/refills/', PatientRefillsView.as_view(), name='patient-refills'),
    path('inventory/', InventoryListView.as_view(), name='inventory-list'),
    path('inventory/low-stock/', LowStockView.as_view(), name='inventory-low-stock'),
    path('dashboard/', DashboardView.as_view(), name='dashboard'),
    path('traces/<str:trace_id>/', TraceView.as_view(), name='trace-detail'),
    path('dispatch/ack/', DispatchAckView.as_view(), name='dispatch-ack'),
]
