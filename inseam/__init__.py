"""Inseam - turn inbox email into proposed tracker updates"""

from __future__ import annotations

__version__ = "1.0.0"
