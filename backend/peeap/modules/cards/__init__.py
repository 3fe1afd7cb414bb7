"""Closed-loop virtual and physical cards: numbering, lifecycle, spend limits."""
