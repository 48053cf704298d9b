"""
Test suite for alignfn.

This package contains unit tests and integration tests for:
- Signature fingerprinting and output decoding
- Alignment store persistence and state transitions
- Prompt building and the repair loop
- Distillation scheduling, promotion and demotion
"""
