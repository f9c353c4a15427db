"""Adapters layer for the MCU batch engine.

Adapters implement the Port interfaces defined in the domain layer.
"""
