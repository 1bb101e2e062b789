"""
biocat: resumable ingestion of biopharma drug-pipeline and catalyst data.

Crawls the paginated BPIQ API, checkpoints progress to disk and loads the
results into a normalized relational store with idempotent upserts.
"""

__version__ = "0.1.0"
