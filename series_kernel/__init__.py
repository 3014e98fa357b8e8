"""
Series Kernel

Shared foundations for the recurring booking scheduler:
- Typed exceptions with machine-readable codes
- Structured JSON logging
- Injectable clocks
- SQLAlchemy declarative base and engine management
"""

__version__ = "0.1.0"
