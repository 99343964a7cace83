"""Tabular consumers of the zone set and zonal tables."""
