"""Fetching, crawling and checkpointing of BPIQ collections."""
