"""Transcript segment merge analysis."""
