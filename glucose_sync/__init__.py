"""Glucose readings API with Dexcom CGM synchronization."""

__version__ = "1.2.3"
