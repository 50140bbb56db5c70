"""forumbrief - cached, fault-tolerant AI summaries for forum threads."""

__version__ = "0.1.0"
