# priority/views.py

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .engine.feedback import FeedbackTracker
from .engine.preferences import get_preferences
from .engine.registry import RuleRegistry
from .engine.schedules import ScheduleManager
from .exceptions import AlreadyRevertedError, FatalJobError, PersistenceError, ScheduleBusyError
from .models import (
    JOB_STATUS_CHOICES,
    OptimizationHistory,
    OptimizationJob,
    OptimizationRule,
    OptimizationSchedule,
    TaskPriorityScore,
)
from .serializers import (
    FeedbackRequestSerializer,
    OptimizationHistorySerializer,
    OptimizationJobSerializer,
    OptimizationPreferenceSerializer,
    OptimizationRuleSerializer,
    OptimizationScheduleSerializer,
    OptimizeRequestSerializer,
    RecommendationRequestSerializer,
    RevertRequestSerializer,
    ScheduleRunRequestSerializer,
    TaskPriorityScoreSerializer,
    as_drf_error,
)
from .services import PriorityOptimizationService

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500


# ---------------------------------------------------------------------------
# Recommendations & optimization
# ---------------------------------------------------------------------------

class RecommendationsView(APIView):
    """
    POST: Read-only priority recommendations for the caller's tasks.
    Nothing is persisted; per-task failures come back in `errors`.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = RecommendationRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        service = PriorityOptimizationService(request.user)
        try:
            recommendations, errors = service.get_recommendations(
                task_ids=data.get('task_ids'),
                limit=data['limit'],
                context=data.get('context'),
            )
        except FatalJobError as e:
            logger.error(f"Recommendations unavailable for user {request.user.pk}: {str(e)}")
            return Response({'detail': str(e)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response({
            'recommendations': [rec.to_dict() for rec in recommendations],
            'errors': errors,
        })

recommendations_view = RecommendationsView.as_view()


class OptimizeView(APIView):
    """
    POST: Run an on-demand optimization synchronously and return what it
    applied. Unset max_changes/min_confidence come from the caller's
    aggressiveness preference.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = OptimizeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        service = PriorityOptimizationService(request.user)
        try:
            result = service.optimize(
                task_ids=data.get('task_ids'),
                max_changes=data.get('max_changes'),
                min_confidence=data.get('min_confidence'),
                context=data.get('context'),
            )
        except FatalJobError as e:
            return Response({'detail': str(e)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response(result.to_dict())

optimize_view = OptimizeView.as_view()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class RuleListCreateView(generics.ListCreateAPIView):
    """
    GET: List the caller's optimization rules (?is_active=true|false).
    POST: Create a rule; conditions and config are validated per rule_type.
    """
    serializer_class = OptimizationRuleSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = OptimizationRule.objects.filter(user=self.request.user)
        is_active = self.request.query_params.get('is_active')
        if is_active is not None:
            qs = qs.filter(is_active=is_active.lower() in ('1', 'true', 'yes'))
        return qs

rule_list_create_view = RuleListCreateView.as_view()


class RuleRetrieveUpdateDestroyView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET, PUT, PATCH, DELETE for one rule. PATCH is_active toggles it.
    DELETE soft-disables a rule that history still references.
    """
    serializer_class = OptimizationRuleSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return OptimizationRule.objects.filter(user=self.request.user)

    def destroy(self, request, *args, **kwargs):
        rule = self.get_object()
        if RuleRegistry(request.user).delete(rule.pk):
            return Response(status=status.HTTP_204_NO_CONTENT)
        rule.refresh_from_db()
        return Response(
            {'detail': 'Rule is referenced by history and was disabled instead.',
             'rule': self.get_serializer(rule).data},
            status=status.HTTP_200_OK,
        )

rule_detail_view = RuleRetrieveUpdateDestroyView.as_view()


class DefaultRulesView(APIView):
    """POST: Seed the starter rule set for the caller."""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        created = RuleRegistry(request.user).create_default_rules()
        return Response(
            OptimizationRuleSerializer(created, many=True).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

default_rules_view = DefaultRulesView.as_view()


# ---------------------------------------------------------------------------
# Schedules & jobs
# ---------------------------------------------------------------------------

class ScheduleListCreateView(generics.ListCreateAPIView):
    serializer_class = OptimizationScheduleSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return OptimizationSchedule.objects.filter(user=self.request.user)

schedule_list_create_view = ScheduleListCreateView.as_view()


class ScheduleRetrieveUpdateDestroyView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET, PUT, PATCH, DELETE for one schedule. Disabling or deleting a
    schedule cancels its active job.
    """
    serializer_class = OptimizationScheduleSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return OptimizationSchedule.objects.filter(user=self.request.user)

    def perform_destroy(self, instance):
        ScheduleManager().delete_schedule(instance)

schedule_detail_view = ScheduleRetrieveUpdateDestroyView.as_view()


class ScheduleRunView(APIView):
    """POST: Trigger a schedule now. 409 when it already has an active job."""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        schedule = get_object_or_404(OptimizationSchedule, pk=pk, user=request.user)
        serializer = ScheduleRunRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            job = ScheduleManager().trigger_now(schedule, context=serializer.validated_data.get('context'))
        except ScheduleBusyError as e:
            return Response({'detail': str(e)}, status=status.HTTP_409_CONFLICT)
        return Response(OptimizationJobSerializer(job).data, status=status.HTTP_202_ACCEPTED)

schedule_run_view = ScheduleRunView.as_view()


class JobListView(generics.ListAPIView):
    """GET: The caller's jobs, newest first (?status=pending|running|completed|failed)."""
    serializer_class = OptimizationJobSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = OptimizationJob.objects.filter(user=self.request.user).select_related('schedule')
        job_status = self.request.query_params.get('status')
        if job_status in dict(JOB_STATUS_CHOICES):
            qs = qs.filter(status=job_status)
        return qs

job_list_view = JobListView.as_view()


class JobRetrieveView(generics.RetrieveAPIView):
    """GET: Pollable job status and progress."""
    serializer_class = OptimizationJobSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return OptimizationJob.objects.filter(user=self.request.user)

job_detail_view = JobRetrieveView.as_view()


class JobCancelView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        job = get_object_or_404(OptimizationJob, pk=pk, user=request.user)
        if not job.is_active:
            return Response({'detail': f"Job is already {job.status}."}, status=status.HTTP_409_CONFLICT)
        job = ScheduleManager().cancel_job(job)
        return Response(OptimizationJobSerializer(job).data)

job_cancel_view = JobCancelView.as_view()


class JobRetryView(APIView):
    """POST: Retry a failed job as a new job row."""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        job = get_object_or_404(OptimizationJob, pk=pk, user=request.user)
        try:
            retry = ScheduleManager().retry_job(job)
        except DjangoValidationError as e:
            raise as_drf_error(e)
        except ScheduleBusyError as e:
            return Response({'detail': str(e)}, status=status.HTTP_409_CONFLICT)
        return Response(OptimizationJobSerializer(retry).data, status=status.HTTP_202_ACCEPTED)

job_retry_view = JobRetryView.as_view()


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class FeedbackView(APIView):
    """POST {history_id, accepted, feedback?}"""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = FeedbackRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            history = FeedbackTracker().record_feedback(
                request.user, data['history_id'], data['accepted'], data.get('feedback')
            )
        except OptimizationHistory.DoesNotExist:
            return Response({'detail': 'History entry not found.'}, status=status.HTTP_404_NOT_FOUND)
        return Response(OptimizationHistorySerializer(history).data)

feedback_view = FeedbackView.as_view()


class RevertView(APIView):
    """POST {history_id}: restore the old priority. 409 if already reverted."""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = RevertRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            history = FeedbackTracker().revert(request.user, serializer.validated_data['history_id'])
        except OptimizationHistory.DoesNotExist:
            return Response({'detail': 'History entry not found.'}, status=status.HTTP_404_NOT_FOUND)
        except (AlreadyRevertedError, PersistenceError) as e:
            return Response({'detail': str(e)}, status=status.HTTP_409_CONFLICT)
        return Response(OptimizationHistorySerializer(history).data)

revert_view = RevertView.as_view()


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class StatsView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        return Response(PriorityOptimizationService(request.user).stats())

stats_view = StatsView.as_view()


class InsightsView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        return Response(PriorityOptimizationService(request.user).insights())

insights_view = InsightsView.as_view()


class HistoryListView(generics.ListAPIView):
    """GET: Most recent history entries (?limit=, default 50)."""
    serializer_class = OptimizationHistorySerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        try:
            limit = int(self.request.query_params.get('limit', DEFAULT_HISTORY_LIMIT))
        except ValueError:
            limit = DEFAULT_HISTORY_LIMIT
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        return OptimizationHistory.objects.filter(user=self.request.user).select_related('task')[:limit]

history_list_view = HistoryListView.as_view()


class ScoreListView(generics.ListAPIView):
    """GET: Current scores, optionally for ?task_ids=1,2,3 only."""
    serializer_class = TaskPriorityScoreSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = TaskPriorityScore.objects.filter(user=self.request.user, is_current=True)
        raw_ids = self.request.query_params.get('task_ids')
        if raw_ids:
            ids = [int(part) for part in raw_ids.split(',') if part.strip().isdigit()]
            qs = qs.filter(task_id__in=ids)
        return qs

score_list_view = ScoreListView.as_view()


class PreferenceView(generics.RetrieveUpdateAPIView):
    """GET, PUT, PATCH the caller's optimization preferences."""
    serializer_class = OptimizationPreferenceSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_object(self):
        return get_preferences(self.request.user)

preference_view = PreferenceView.as_view()
