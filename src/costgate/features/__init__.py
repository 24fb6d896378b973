"""
Features module - report rendering.
"""

from .report import CostReportFormatter

__all__ = ["CostReportFormatter"]
