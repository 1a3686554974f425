"""Signaling transport and per-call channel."""
