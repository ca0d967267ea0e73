"""Tests for nmapy."""
