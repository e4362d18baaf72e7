from django.urls import path
from .views import *
urlpatterns = [
    path('admin/orders/', OrderIngestView.as_view(), name='order-ingest'),
    path('admin/orders/<str:order_id>/duplicates/', OrderDuplicatesView.as_view(), name='order-duplicates'),
    path('admin/orders/<str:order_id>/duplicates/merge/', MergeDuplicatesView.as_view(), name='order-duplicates-merge'),
    path('admin/line-items/status/', LineItemStatusView.as_view(), name='line-item-status'),
    path('admin/line-items/<str:line_item_id>/fulfillment/', LineItemFulfillmentView.as_view(), name='line-item-fulfillment'),
]
