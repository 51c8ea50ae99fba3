"""Loyalty points ledger, points to coins conversion and customer segmentation."""
