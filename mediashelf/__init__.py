"""Local media library: courses, watch progress, notes, bookmarks, settings."""

__version__ = "0.2.0"
