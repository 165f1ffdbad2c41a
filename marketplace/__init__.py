# marketplace/__init__.py
"""
Services marketplace lead distribution, lifecycle, payout and notification engine.
"""

__version__ = "1.0.0"
