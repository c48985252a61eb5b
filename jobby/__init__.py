"""Job discovery pipeline: search, dedup, score and persist recommended listings."""

__version__ = "0.1.0"
