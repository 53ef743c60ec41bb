"""Recurrence rule encoding, expansion and expansion caching."""
