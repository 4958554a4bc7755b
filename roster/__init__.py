"""Voter-roll service package: DB models, pipelines, APIs.

This package covers CSV ingestion of electoral rolls, household matching,
resumable address geocoding and CSV export.
"""
