"""Blueprints of the sample application."""
