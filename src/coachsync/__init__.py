"""coachsync - offline-first event sync with calendar imports."""

__version__ = "1.0.0"
