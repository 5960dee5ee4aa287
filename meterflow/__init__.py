"""
Meterflow - usage metering, aggregation and metered billing
"""

__version__ = "1.0.0"
