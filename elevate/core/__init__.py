"""Elevate Engine core: logging, errors, middleware, transactions, security."""
