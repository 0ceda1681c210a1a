"""Unit tests for the storage-independent voting core."""
