"""Sequence reconciliation: gap detection, backfill requests and retries."""
