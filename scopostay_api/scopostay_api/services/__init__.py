"""Stripe-facing billing services."""
