"""
loan-sync: Library loan reconciliation engine.

Keeps a local record store in step with a patron's loans at the library,
enriching each book with metadata from an external lookup service.
"""

__version__ = "0.1.0"
