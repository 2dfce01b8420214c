"""Inference engine backends."""
