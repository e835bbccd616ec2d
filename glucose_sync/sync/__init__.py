"""Dexcom synchronization: classification, strategies, job and worker."""
