"""Realtime, signaling and matching primitives for the matchmaking core."""
