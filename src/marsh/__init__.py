"""marsh: zone, raster and time-series preparation for a mosquito surveillance dashboard.

Subsystem CLIs:
- marsh.registry → zone definition (county ∩ basin ∩ ZIP polygons)
- marsh.geo      → raster mask/merge/clip, zonal aggregation, gap filling
- marsh.features → tabular consumers (trap counts, temperature classes)
"""

__version__ = "0.1.0"
