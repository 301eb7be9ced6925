"""Batch services: generation engine, delivery queue, scan scheduler."""
