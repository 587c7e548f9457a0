"""
Jig Ledger CLI

Command line entry point for reconciliation passes and ownership queries.
"""

__version__ = "0.1.0"
