"""govrun: governance schedule reconciliation and per-run budget guards."""

__version__ = "0.1.0"
