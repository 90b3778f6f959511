"""
Core modules for token_meter.

This package contains quota enforcement, usage recording, plan pricing
and the per-request accounting orchestrator.
"""
