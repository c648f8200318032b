"""
Runway Test Suite
=================

Tests mirror the package layout:
    tests/
    ├── test_core/          → config, enums, exceptions, models, run state
    ├── test_infrastructure/→ artifact stores and the retention sweeper
    ├── test_integrations/  → local and scripted executors, executor factory
    ├── test_orchestration/ → parser, scheduler, gates, run ledger, properties
    ├── test_integration/   → real shell pipelines and the CLI
    ├── test_facade.py      → the Runway facade
    └── conftest.py         → Shared pytest fixtures

Running Tests:
    pytest                               # Run all tests
    pytest tests/test_orchestration/     # Run only orchestration tests
    pytest -k Cancellation               # Run the cancellation scenarios
"""
