"""Writing crawled batches into the relational store."""
