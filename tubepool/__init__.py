"""
Tubepool - YouTube listings and summaries over a shared browser session.

Attaches to the operator's Chrome instance, serves cached feed listings and
queues summary requests through YouTube's built-in assistant.
"""

__version__ = "0.1.0"
