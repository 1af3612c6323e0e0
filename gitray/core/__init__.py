"""Sync engine core: content addressing, diffing, patching and journaling."""
