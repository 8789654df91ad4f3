"""
Tests for the Recurrent DQN Core
================================

Run all tests:
    pytest tests/

Skip the slow ones:
    pytest tests/ -m "not slow"
"""
