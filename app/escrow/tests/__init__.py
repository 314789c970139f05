"""Tests for the escrow app."""
