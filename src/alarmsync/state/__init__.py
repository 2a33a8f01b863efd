"""State/store layer.

This package is the single source of truth for how validated envelopes and
local optimistic actions are merged into a deterministic, priority-ordered
per-category view.
"""
