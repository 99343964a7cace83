"""Zone definition: county ∩ basin ∩ ZIP polygons."""
