"""CMMCalc - construction material quantity derivation engine."""

__version__ = "0.1.0"
