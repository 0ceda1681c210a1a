"""
Versus - head-to-head voting backend.

Participants vote on tests either with a single direct vote or by playing
an elimination bracket across all of a test's options.
"""

__version__ = "1.0.0"
