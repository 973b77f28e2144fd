"""
Test Tools Package
Tests for the tools module (invitation notifier)
"""
