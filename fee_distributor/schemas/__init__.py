"""Pydantic response models for the HTTP surface."""
