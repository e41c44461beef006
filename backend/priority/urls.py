# priority/urls.py

from django.urls import path
from .views import (
    default_rules_view,
    feedback_view,
    history_list_view,
    insights_view,
    job_cancel_view,
    job_detail_view,
    job_list_view,
    job_retry_view,
    optimize_view,
    preference_view,
    recommendations_view,
    revert_view,
    rule_detail_view,
    rule_list_create_view,
    schedule_detail_view,
    schedule_list_create_view,
    schedule_run_view,
    score_list_view,
    stats_view,
)

urlpatterns = [
    # Read-only suggestions and on-demand runs
    path('recommendations/', recommendations_view, name='priority-recommendations'),
    path('optimize/', optimize_view, name='priority-optimize'),

    # Rules (GET/POST list, GET/PUT/PATCH/DELETE detail)
    path('rules/', rule_list_create_view, name='priority-rule-list'),
    path('rules/defaults/', default_rules_view, name='priority-rule-defaults'),
    path('rules/<int:pk>/', rule_detail_view, name='priority-rule-detail'),

    # Schedules
    path('schedules/', schedule_list_create_view, name='priority-schedule-list'),
    path('schedules/<int:pk>/', schedule_detail_view, name='priority-schedule-detail'),
    path('schedules/<int:pk>/run/', schedule_run_view, name='priority-schedule-run'),

    # Jobs
    path('jobs/', job_list_view, name='priority-job-list'),
    path('jobs/<int:pk>/', job_detail_view, name='priority-job-detail'),
    path('jobs/<int:pk>/cancel/', job_cancel_view, name='priority-job-cancel'),
    path('jobs/<int:pk>/retry/', job_retry_view, name='priority-job-retry'),

    # Feedback loop
    path('feedback/', feedback_view, name='priority-feedback'),
    path('revert/', revert_view, name='priority-revert'),

    # Read models
    path('stats/', stats_view, name='priority-stats'),
    path('insights/', insights_view, name='priority-insights'),
    path('history/', history_list_view, name='priority-history'),
    path('scores/', score_list_view, name='priority-scores'),
    path('preferences/', preference_view, name='priority-preferences'),
]
