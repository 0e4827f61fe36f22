"""
Geospatial operations for catalog search and lazy raster access.

This module contains:
- STAC operations (search, best-item selection, band selection)
- Raster operations (header-only opens, window crops, resampling, band math)
"""
