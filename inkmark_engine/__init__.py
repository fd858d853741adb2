"""Ink recognition coordinate engine.

This package turns a canvas selection into recognised characters and error
annotations that land exactly on the original ink:
- two-phase capture (rasterize + readiness gate, then recognize)
- pixel -> page coordinate mapping with scale-anomaly correction
- reconciliation of analysis boxes against canonical OCR boxes
- non-overlapping placement for suggestion cards

Canvas rendering, OCR and the reasoning service are external collaborators.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
