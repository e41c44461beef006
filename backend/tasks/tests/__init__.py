# tasks/tests/__init__.py
"""
Task App Test Suite
===================

This package contains tests for the tasks application.

Modules:
--------
- test_store: Candidate enumeration, snapshots and the priority-only mutation

Running Tests:
--------------
    # Run all task tests
    python manage.py test tasks --settings=spohome.settings_test

    # Run with verbose output
    python manage.py test tasks -v 2 --settings=spohome.settings_test
"""
