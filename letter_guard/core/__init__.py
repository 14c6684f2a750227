"""
Core modules for letter_guard.

This package contains the letter state machine, the resilience layer
(retry policy and circuit breaker), reviewer actions and the generation
orchestrator.
"""
