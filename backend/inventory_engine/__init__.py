"""Recipe-driven inventory availability and batched deduction engine."""

__version__ = "1.0.0"
