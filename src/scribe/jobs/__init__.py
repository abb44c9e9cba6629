"""Processing jobs -- schemas, persistence, and the orchestrating state machine.

A job moves pending -> processing -> {completed, failed}; a completed job may
be reprocessed (completed -> processing -> {completed, failed}). Every move
into processing is a compare-and-swap against the persisted status.
"""
