"""
Tests for the appointment booking service

Test suite covering:
- Dialogue state machine transitions
- Validation and normalization helpers
- Session store persistence
- Turn orchestration scenarios
- API endpoints and error mapping

Run tests with:
    python -m pytest appointment/tests/ -v
"""
