"""Pipelines for roster versions, CSV import/export, household matching and geocoding.

Each step is callable independently, from the API or from operator scripts.
"""
