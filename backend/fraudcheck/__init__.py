"""Chained AI fraud analysis of loan application documents."""
