"""Allocation app for the transplant project.

This package contains the organ allocation workflow engine: the models
it persists, the compatibility scoring function, the per-entity status
state machines and the coordinator that applies cascading updates.
"""
