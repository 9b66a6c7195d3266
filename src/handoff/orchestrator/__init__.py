"""Orchestrator module - objective splitting, worker isolation and plan execution.

Submodules are imported directly (``handoff.orchestrator.executor`` and
friends); the priority queue depends on ``handoff.orchestrator.batch`` so
this package keeps no eager imports.
"""
