"""Lease-based activity sync governor and score recompute trigger."""

__version__ = "0.1.0"
