"""Busy-window sources, per-integration gateway and cross-integration aggregation."""
