# priority/serializers.py

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers

from .engine.registry import RuleRegistry
from .engine.schedules import ScheduleManager
from .models import (
    OptimizationHistory,
    OptimizationJob,
    OptimizationPreference,
    OptimizationRule,
    OptimizationSchedule,
    TaskPriorityScore,
)

logger = logging.getLogger(__name__)


def as_drf_error(exc: DjangoValidationError) -> serializers.ValidationError:
    if hasattr(exc, 'error_dict'):
        return serializers.ValidationError(exc.message_dict)
    return serializers.ValidationError(exc.messages)


def _request_user(serializer):
    user = serializer.context['request'].user
    if not user or not user.is_authenticated:
        raise serializers.ValidationError("Authentication required.")
    return user


# ---------------------------------------------------------------------------
# Model serializers
# ---------------------------------------------------------------------------

class OptimizationRuleSerializer(serializers.ModelSerializer):
    class Meta:
        model = OptimizationRule
        fields = [
            'id', 'rule_name', 'rule_type', 'description', 'rule_config', 'weight',
            'trigger_conditions', 'exclusion_conditions', 'is_active',
            'times_applied', 'times_succeeded', 'success_rate', 'created_at', 'updated_at'
        ]
        # statistics belong to the feedback tracker
        read_only_fields = [
            'id', 'times_applied', 'times_succeeded', 'success_rate', 'created_at', 'updated_at'
        ]

    def create(self, validated_data):
        """Rules are written through the registry so write-time validation always runs."""
        user = _request_user(self)
        try:
            return RuleRegistry(user).create(**validated_data)
        except DjangoValidationError as e:
            raise as_drf_error(e)

    def update(self, instance, validated_data):
        user = _request_user(self)
        try:
            return RuleRegistry(user).update(instance.pk, **validated_data)
        except DjangoValidationError as e:
            raise as_drf_error(e)


class OptimizationScheduleSerializer(serializers.ModelSerializer):
    class Meta:
        model = OptimizationSchedule
        fields = [
            'id', 'schedule_name', 'schedule_type', 'schedule_time', 'schedule_interval',
            'optimization_scope', 'max_changes_per_run', 'min_confidence_threshold',
            'category_filter', 'project_filter', 'priority_filter', 'is_active',
            'state', 'last_run_at', 'next_run_at', 'created_at', 'updated_at'
        ]
        read_only_fields = ['id', 'state', 'last_run_at', 'next_run_at', 'created_at', 'updated_at']
        extra_kwargs = {
            # filled from the owner's aggressiveness preset when omitted
            'max_changes_per_run': {'required': False},
            'min_confidence_threshold': {'required': False},
        }

    def create(self, validated_data):
        user = _request_user(self)
        try:
            return ScheduleManager().create_schedule(user, **validated_data)
        except DjangoValidationError as e:
            raise as_drf_error(e)

    def update(self, instance, validated_data):
        try:
            return ScheduleManager().update_schedule(instance, **validated_data)
        except DjangoValidationError as e:
            raise as_drf_error(e)


class OptimizationJobSerializer(serializers.ModelSerializer):
    schedule_name = serializers.ReadOnlyField(source='schedule.schedule_name')

    class Meta:
        model = OptimizationJob
        fields = [
            'id', 'schedule', 'schedule_name', 'retry_of', 'job_type', 'scope', 'status',
            'cancel_requested', 'started_at', 'completed_at', 'tasks_analyzed',
            'priorities_changed', 'errors_count', 'error_details', 'progress_percentage',
            'current_task', 'created_at'
        ]
        read_only_fields = fields


class OptimizationHistorySerializer(serializers.ModelSerializer):
    task_title = serializers.ReadOnlyField(source='task.title')

    class Meta:
        model = OptimizationHistory
        fields = [
            'id', 'task', 'task_title', 'job', 'optimization_type', 'old_priority', 'new_priority',
            'confidence_score', 'priority_score', 'previous_score', 'reasoning', 'applied_rules',
            'optimization_factors', 'user_accepted', 'user_feedback', 'feedback_at',
            'reverted_at', 'created_at'
        ]
        read_only_fields = fields


class TaskPriorityScoreSerializer(serializers.ModelSerializer):
    class Meta:
        model = TaskPriorityScore
        fields = [
            'id', 'task', 'job', 'calculated_priority', 'priority_score', 'confidence_level',
            'urgency_score', 'importance_score', 'context_score', 'pattern_score',
            'dependency_score', 'calculation_method', 'factors_considered',
            'last_recalculated_at', 'is_current', 'created_at'
        ]
        read_only_fields = fields


class OptimizationPreferenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = OptimizationPreference
        fields = ['aggressiveness', 'category_weights', 'project_weights']

    def update(self, instance, validated_data):
        for name, value in validated_data.items():
            setattr(instance, name, value)
        try:
            # model save() runs full_clean
            instance.save()
        except DjangoValidationError as e:
            raise as_drf_error(e)
        return instance


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class RecommendationRequestSerializer(serializers.Serializer):
    task_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, allow_empty=True)
    limit = serializers.IntegerField(min_value=1, max_value=100, default=10)
    context = serializers.DictField(required=False, default=dict)


class OptimizeRequestSerializer(serializers.Serializer):
    task_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, allow_empty=True)
    max_changes = serializers.IntegerField(min_value=1, required=False)
    min_confidence = serializers.FloatField(min_value=0.0, max_value=1.0, required=False)
    context = serializers.DictField(required=False, default=dict)


class FeedbackRequestSerializer(serializers.Serializer):
    history_id = serializers.IntegerField(min_value=1)
    accepted = serializers.BooleanField()
    feedback = serializers.CharField(required=False, allow_blank=True)


class RevertRequestSerializer(serializers.Serializer):
    history_id = serializers.IntegerField(min_value=1)


class ScheduleRunRequestSerializer(serializers.Serializer):
    context = serializers.DictField(required=False, default=dict)
