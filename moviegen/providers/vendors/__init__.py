"""Concrete vendor adapters, one module per vendor."""
