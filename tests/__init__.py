"""
Ask Eve Assist test suite.

Running Tests:
    # Run all tests
    pytest -v

    # Unit tests only
    pytest tests/unit -v

    # Escalation integration tests
    pytest tests/test_escalation_integration.py -v

Test Coverage:
    - Trigger table and safety analysis (exact, fuzzy, pattern, context)
    - Legacy severity adapter
    - Progressive escalation responses
    - Nurse team notifications (retries, acknowledgement, card format)
    - Escalation service (validation, consent, delivery tracking)
    - Consent management and audit trail
    - Conversation state machine, store and flow engine
"""
