from django.urls import path

from .views import PrescriptionDoseView, PrescriptionReplaceView, WebhookView

urlpatterns = [
    path('webhooks/<slug:source>/', WebhookView.as_view(), name='webhook'),
    path('prescriptions/<uuid:prescription_id>/dose/', PrescriptionDoseView.as_view(), name='prescription-dose'),
    path('prescriptions/<uuid:prescription_id>/replace/', PrescriptionReplaceView.as_view(),
         name='prescription-replace'),
]
