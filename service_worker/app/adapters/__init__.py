"""Adapters guarding calls to external inference servers."""
