"""
Jig Ledger CLI Commands Package

Command modules for the ownership ledger CLI.
"""

__all__ = ['ledger', 'query', 'backups', 'config']
