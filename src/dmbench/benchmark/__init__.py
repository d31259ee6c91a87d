"""Scenario aggregation, checkpoints and the run-level orchestrator."""
