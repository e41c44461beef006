# priority/tests/__init__.py
"""
Priority Engine Test Suite
==========================

Unit and integration tests for the priority optimization engine.

Modules:
--------
- test_rule_types: Condition/config parsing and clause matching
- test_scorer: Sub-scores, composite score, confidence and buckets
- test_aggregator: Pattern and context signals, caching and invalidation
- test_registry: Rule CRUD, validation and active-rule selection
- test_schedules: Next-run computation, dispatch, leases and job lifecycle
- test_processor: Optimization runs end to end
- test_feedback: Accept/reject/revert and rule statistics
- test_api: HTTP endpoints
- test_celery_tasks: Worker entry points and the on_change signal path

Running Tests:
--------------
    # Run all priority tests
    python manage.py test priority --settings=spohome.settings_test

    # Or through pytest (settings come from pyproject.toml)
    pytest backend/priority
"""
