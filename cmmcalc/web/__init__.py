"""FastAPI application for CMMCalc."""
