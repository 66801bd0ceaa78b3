"""
Kardex: evaluation and grade computation engine for academic records.

Weighted evaluation schemes per course, final grade computation, attendance
gating of the final exam, live scheme reconfiguration with migration of the
scores already recorded, and the academic period lifecycle with cycle promotion.
"""

__version__ = "1.0.0"
__author__ = "Kardex Development Team"
__description__ = "Evaluation and grade computation engine"
