"""Scopostay billing reconciliation core."""
