"""Continuous package build orchestration.

The loop here is deliberately small: one process owns the queue, builds run
on a thread pool, and every control input arrives as a row in SQLite. That
keeps a single-machine factory free of a broker while still surviving a
restart: package status, signals and per-phase checkpoints are all
persisted, so a new run resumes where the previous one stopped.
"""
