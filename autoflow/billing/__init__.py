"""Billing reconciliation and entitlements."""
