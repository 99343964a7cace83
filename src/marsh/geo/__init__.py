"""Raster mask/merge/clip, zonal aggregation and gap filling."""
