"""Helmsman status monitor: pure read-only projection over the run store and ledger.

The monitor NEVER maintains its own state.  Every call re-reads the store
and the ledger.  It is a projection, not a source of truth.

Modules
-------
projection
    ``StatusProjection`` produces ``RunStatus`` Pydantic models: a frozen,
    point-in-time view of one deployment run.
renderer
    ``StatusRenderer`` turns ``RunStatus`` and rollout plans into Rich
    renderables, including continuous ``Rich.Live`` mode.
"""
