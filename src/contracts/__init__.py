"""Contracts package.

This package defines the *public* channel contracts: stream names, envelope fields,
and v1 payload semantics for repository requests and replies. Callers and the bridge
may only share types via `src.core` and `src.contracts`.
"""
