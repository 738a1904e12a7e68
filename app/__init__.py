"""Chohan application layer."""
