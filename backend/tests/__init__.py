"""
Admissions workflow engine test suite

Fixtures live in conftest.py; one module per engine component plus
test_api.py for the HTTP surface.

    pytest backend/tests
"""
