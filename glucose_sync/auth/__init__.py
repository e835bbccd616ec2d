"""Dexcom OAuth and API client."""
