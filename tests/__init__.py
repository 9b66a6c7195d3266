"""Test suite for handoff."""
