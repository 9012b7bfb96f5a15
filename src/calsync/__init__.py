"""calsync: CalDAV calendar sync with a live push channel and notification ledger."""

__version__ = "0.1.0"
