"""Billing records: subscriptions, payments, and the store they live in."""
