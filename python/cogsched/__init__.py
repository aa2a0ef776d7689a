"""cogsched: priority, dependency and condition-gated task scheduling."""

__version__ = "0.1.0"
