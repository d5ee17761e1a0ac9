"""
Services module for the roster sync engine.

This module organizes services into:
- core: Credential vault, token manager and the Twizzit API client
- sync: Reconcilers, orchestrator and the sync entry points
"""
