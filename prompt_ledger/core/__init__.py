"""
Core modules for prompt-ledger.

This package contains cost accounting, token-equivalent estimation
and schema migration for persisted state.
"""
