"""
Structured event emission and the in-memory event store shared by the
capture pipeline and lead control.
"""
