"""Import admission, chunk processing, job status, and identifier backfill.

Each step takes a ``Store`` so it can run inline, in a detached task, or
from a test without the HTTP layer.
"""
