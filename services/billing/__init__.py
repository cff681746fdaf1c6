"""Billing order and refund reconciliation services."""
