"""Payment gateway webhook ingestion.

Receives gateway notifications, verifies their signature, normalizes the
payload and reconciles subscription and payment records idempotently.
"""
