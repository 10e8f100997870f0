"""
TourDash Data Layer

Caching, real-time synchronization and analytics reconciliation for the
virtual-tour creator dashboard and the end-client portal:
1. Layered caches (TTL entry store, keyed query cache, managed fetch cache,
   persistent preferences)
2. Debounced change notifications from the hosted database
3. Unified analytics across event rows and imported spreadsheets
4. One-pass dashboard aggregation
"""

__version__ = "0.1.0"
