import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import workflow
from .events import get_adapter
from .serializers import (
    ReplacementRequestSerializer,
    serialize_dose_resolution,
    serialize_event_outcome,
    serialize_prescription,
)

logger = logging.getLogger(__name__)


class WebhookView(APIView):
    """
    POST /api/webhooks/<source>/

    Any failure is raised; unified_exception_handler formats the response.
    """

    def post(self, request, source):
        adapter = get_adapter(
            source,
            raw_body=request.body,
            content_type=request.content_type or '',
            headers=dict(request.headers),
        )
        event = adapter.process()
        logger.info("[Webhook][%s] %s received", source, type(event).__name__)
        outcome = workflow.handle_event(event)
        return Response(serialize_event_outcome(source, outcome), status=status.HTTP_200_OK)


class PrescriptionDoseView(APIView):
    """GET /api/prescriptions/<id>/dose/ - current and next dose step"""

    def get(self, request, prescription_id):
        prescription = workflow.get_prescription(prescription_id)
        return Response(serialize_dose_resolution(prescription))


class PrescriptionReplaceView(APIView):
    """POST /api/prescriptions/<id>/replace/ - supersede an active prescription"""

    def post(self, request, prescription_id):
        serializer = ReplacementRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        fields = dict(serializer.validated_data)
        prescriber = fields.pop('prescriber_id', None)

        replacement = workflow.create_replacement_prescription(prescription_id, prescriber=prescriber, **fields)
        return Response(serialize_prescription(replacement), status=status.HTTP_201_CREATED)
