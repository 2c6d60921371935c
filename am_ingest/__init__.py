"""Backend package: store, import pipelines, identifier backfill, and the HTTP API.

Bulk asset-match imports are admitted quickly and applied in persisted
chunks by a background processor; Drive identifiers are resolved lazily and
backfilled on a schedule.
"""
