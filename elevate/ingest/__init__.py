"""Kajabi ingest: payload contract, tag normalization and signature checks."""
