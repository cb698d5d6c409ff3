"""Chit fund cycle settlement, collection reconciliation and rollup engine."""

__version__ = "1.0.0"
