from django.urls import path
from .views import *

urlpatterns = [
    path("pending/", PendingPayoutView.as_view(), name="payout-pending"),
    path("vendor/pending/", VendorPendingPayoutView.as_view(), name="payout-vendor-pending"),
    path("redeem/", RedeemPayoutView.as_view(), name="payout-redeem"),
    path("batches/", BatchListView.as_view(), name="payout-batches"),
    # Admin
    path("admin/batches/", AdminCreateBatchView.as_view(), name="payout-admin-create-batch"),
    path("admin/batches/<uuid:pk>/transition/", BatchTransitionView.as_view(), name="payout-batch-transition"),
    path("admin/mark-month-paid/", MarkMonthPaidView.as_view(), name="payout-mark-month-paid"),
    path("admin/mark-paid/", MarkPaidView.as_view(), name="payout-mark-paid"),
    path("admin/refunds/", ApplyRefundView.as_view(), name="payout-apply-refund"),
    path("admin/vendors/<str:vendor_name>/summary/", VendorSummaryView.as_view(), name="payout-vendor-summary"),
]
