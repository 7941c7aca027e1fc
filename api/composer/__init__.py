"""Prompt templates and composition."""
