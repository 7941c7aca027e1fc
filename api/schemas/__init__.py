"""Shared turn state models."""
