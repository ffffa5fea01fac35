"""Subscription billing reconciliation service."""
