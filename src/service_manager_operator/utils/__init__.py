"""Utility functions for the Service Manager Operator."""
