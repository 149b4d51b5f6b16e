"""Helmsman CLI: Typer-based command-line interface.

Provides the ``helmsman`` command with subcommands for previewing rollout
plans, querying and aborting deployment runs, verifying ledger integrity,
and running a simulated end-to-end demo.

All output uses Rich for formatted terminal display.
"""
