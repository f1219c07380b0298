"""threatscribe — streamed, sectioned cybersecurity research jobs."""

__version__ = "0.1.0"
