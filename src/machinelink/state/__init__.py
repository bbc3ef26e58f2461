"""State/store layer.

This package is the single source of truth for which screen the flow is
on and what the device's identity and liveness currently look like.
"""
